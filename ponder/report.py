"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Base class for failures ponder reports to the user instead of crashing."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad types, invalid TOML, etc.)."""


class ModelBackendError(AgentError):
    """Network, auth or protocol failure while talking to the model."""


class ModelNotConfiguredError(ModelBackendError):
    """No credential is available for any supported provider."""


class ToolNotFoundError(AgentError, KeyError):
    """Raised by ToolRegistry.lookup for an unregistered tool name."""

    def __init__(self, name: str):
        super().__init__(f"Tool not found: {name}")
        self.name = name

    def __str__(self) -> str:
        return self.args[0]


class ReportCollector:
    """Accumulates events during a reasoning run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.recoveries = 0
        self.format_corrections = 0
        self.forced_summary = False
        self.fallbacks = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self._last_report: dict | None = None

    def record_llm_call(self, step: int, duration: float, token_est: int):
        self.llm_calls += 1
        self.total_llm_time += duration
        self.events.append(
            {
                "step": step,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
            }
        )

    def record_tool_call(
        self,
        step: int,
        name: str,
        parameters: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        stats["succeeded" if succeeded else "failed"] += 1
        event: dict = {
            "step": step,
            "type": "tool_call",
            "name": name,
            "parameters": parameters,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_recovery(self, step: int, errors: int):
        self.recoveries += 1
        self.events.append({"step": step, "type": "recovery", "errors": errors})

    def record_format_correction(self, step: int):
        self.format_corrections += 1
        self.events.append({"step": step, "type": "format_correction"})

    def record_forced_summary(self, step: int):
        self.forced_summary = True
        self.events.append({"step": step, "type": "forced_summary"})

    def record_fallback(self, reason: str):
        self.fallbacks += 1
        self.events.append({"type": "fallback", "reason": reason})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        mode: str,
        steps: int,
        error_message: str | None = None,
    ) -> dict:
        succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {"outcome": outcome, "answer": answer, "mode": mode}
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "steps": steps,
                "tool_calls_total": succeeded + failed,
                "tool_calls_succeeded": succeeded,
                "tool_calls_failed": failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "llm_calls": self.llm_calls,
                "recoveries": self.recoveries,
                "format_corrections": self.format_corrections,
                "forced_summary": self.forced_summary,
                "fallbacks": self.fallbacks,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        if self._last_report is None:
            raise AgentError("report has not been finalized")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
