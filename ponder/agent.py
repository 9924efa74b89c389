"""Reasoning loop, single-shot answers, the Agent facade and the command line."""

import argparse
import json
import logging
import os
import signal
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .backend import ModelBackend
from .config import (
    _UNSET,
    apply_config_to_args,
    args_to_agent_kwargs,
    generate_config,
    load_config,
)
from .mode import ModeSelector
from .models import LoopState, LoopStatus, Message, ToolCall, ToolResult
from .parser import parse_arguments, parse_response, render_action, split_call
from .report import (
    AgentError,
    ConfigError,
    ModelBackendError,
    ModelNotConfiguredError,
    ReportCollector,
)
from .session import Session
from .tools import ToolRegistry, default_registry

logger = logging.getLogger(__name__)

REACT_PROMPT_FILE = Path(__file__).parent / "react_prompt.txt"
CHAT_PROMPT_FILE = Path(__file__).parent / "chat_prompt.txt"
MAX_ARG_LOG = 1000

CONTINUE_PROMPT = (
    "Based on the observations above, continue with the next Thought and Action, "
    "or provide a Final Answer if you have enough information."
)
RECOVERY_PROMPT = (
    "The previous actions encountered errors. Please:\n"
    "1. Analyze what went wrong\n"
    "2. Try a different approach or tool\n"
    "3. If the task cannot be completed, explain why and suggest alternatives\n"
    "4. Provide a Final Answer with your analysis"
)
FORMAT_PROMPT = (
    "Please follow the ReAct format strictly:\n"
    "Thought: [your reasoning]\n"
    'Action: ToolName(param="value")\n'
    "or, if you are done:\n"
    "Final Answer: [your conclusion]"
)
SUMMARY_PROMPT = (
    "Please provide a Final Answer summarizing what you have discovered so far "
    "and any recommendations."
)
DEFAULT_FINAL_ANSWER = "Task completed successfully."
STOPPED_ANSWER = "Stopped at user request before a final answer was reached."

NOT_CONFIGURED_MESSAGE = (
    "AI is not configured. Set an API key first:\n"
    "  - Zhipu: export ZHIPU_API_KEY=...\n"
    "  - OpenAI: export OPENAI_API_KEY=...\n"
    "  - Anthropic: export ANTHROPIC_API_KEY=...\n"
    "or pass --api-key (or set api_key in ponder.toml).\n\n"
    "You can still call tools directly:\n"
    '  Read(file_path="README.md")   read a file\n'
    '  Glob(pattern="**/*.py")       find files\n'
    '  Grep(pattern="TODO")          search file contents\n'
    '  Bash(command="ls -la")        run a shell command'
)
CONNECTION_FAILED_MESSAGE = (
    "I'm having trouble connecting to the AI service. "
    "You can still use tool commands directly or try again later."
)

_encoder = None


def estimate_tokens(messages: list[Message], tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    total = 0
    for m in messages:
        total += len(_encoder.encode(m.content or ""))
        for call in m.tool_calls or []:
            total += len(_encoder.encode(call.tool))
            total += len(_encoder.encode(json.dumps(call.parameters, default=str)))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


@dataclass
class Result:
    """Outcome of one user message."""

    answer: str
    mode: str
    status: str
    steps: int = 0
    reasoning_chain: list[str] = field(default_factory=list)


def _tool_signature(tool: dict, schema: dict) -> str:
    props = schema.get("properties", {})
    required = schema.get("required", [])
    args = list(required) + [f"[{p}]" for p in props if p not in required]
    return f"{tool['name']}({', '.join(args)})"


def build_react_prompt(registry: ToolRegistry) -> str:
    """System prompt for the reasoning loop: protocol, tool catalogue and date."""
    schemas = {s["function"]["name"]: s["function"]["parameters"] for s in registry.schemas()}
    lines = []
    for tool in registry.list():
        signature = _tool_signature(tool, schemas.get(tool["name"], {}))
        lines.append(f"- {signature}: {tool['description']}")
    catalogue = "\n".join(lines)
    now = datetime.now().strftime("%Y-%m-%d %H:%M")
    return (
        REACT_PROMPT_FILE.read_text(encoding="utf-8").rstrip()
        + "\n\nAvailable tools (optional parameters in brackets; pass arguments as "
        + 'key=value with double-quoted strings, e.g. Read(file_path="src/app.py")):\n'
        + catalogue
        + f"\n\nThe current date is {now}."
    )


def build_chat_prompt() -> str:
    now = datetime.now().strftime("%Y-%m-%d %H:%M")
    return (
        CHAT_PROMPT_FILE.read_text(encoding="utf-8").rstrip()
        + f"\n\nThe current date is {now}."
    )


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


def _pretty_params(params: dict) -> str:
    pretty = json.dumps(params, indent=2, default=str, ensure_ascii=False)
    if len(pretty) > MAX_ARG_LOG:
        pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
    return pretty


class ReactLoop:
    """Thought/Action/Observation loop for one user message.

    The conversation sent to the model is the ReAct system prompt followed
    by the session history. Intermediate assistant/tool messages live only
    in the loop's own conversation; the session receives the final answer,
    tagged with the reasoning chain and step count.
    """

    def __init__(
        self,
        backend,
        registry: ToolRegistry,
        session: Session,
        *,
        max_steps: int = 10,
        max_consecutive_errors: int = 3,
        verbose: bool = False,
        report: ReportCollector | None = None,
    ):
        if max_steps < 1:
            raise ConfigError(f"max_steps must be at least 1, got {max_steps}")
        if max_consecutive_errors < 1:
            raise ConfigError(
                f"max_consecutive_errors must be at least 1, got {max_consecutive_errors}"
            )
        self.backend = backend
        self.registry = registry
        self.session = session
        self.max_steps = max_steps
        self.max_consecutive_errors = max_consecutive_errors
        self.verbose = verbose
        self.report = report
        self.state: LoopState | None = None
        self._stop_requested = False

    def request_stop(self) -> None:
        """Ask the loop to stop after the tool call in progress."""
        self._stop_requested = True

    def run(self) -> Result:
        """Run until a final answer, a stop request or the step budget.

        Raises ModelBackendError if the model cannot be reached; tool and
        parse problems are fed back to the model instead.
        """
        self._stop_requested = False
        state = self.state = LoopState(
            max_steps=self.max_steps, max_consecutive_errors=self.max_consecutive_errors
        )
        conversation = [Message("system", build_react_prompt(self.registry))]
        conversation.extend(self.session.messages())
        primary = self.registry.primary_parameters()

        while not state.exhausted:
            if self._stop_requested:
                return self._finish(state, STOPPED_ANSWER, LoopStatus.STOPPED)
            if state.status is LoopStatus.RECOVERING:
                state.status = LoopStatus.RUNNING

            text = self._call_model(conversation, state)
            parsed = parse_response(text, primary)
            logger.info(
                "step %d: %d reasoning step(s), final answer: %s",
                state.step_count,
                len(parsed.steps),
                parsed.final_answer is not None,
            )

            if not parsed.steps:
                if parsed.final_answer is not None:
                    return self._finish(state, parsed.final_answer or DEFAULT_FINAL_ANSWER)
                if state.step_count == 1:
                    # No protocol at all on the first reply: a plain answer.
                    return self._finish(state, text.strip() or DEFAULT_FINAL_ANSWER)
                conversation.append(Message("assistant", text))
                conversation.append(Message("user", FORMAT_PROMPT))
                if self.report:
                    self.report.record_format_correction(state.step_count)
                continue

            executed = self._run_steps(parsed.steps, conversation, state)
            if self._stop_requested:
                return self._finish(state, STOPPED_ANSWER, LoopStatus.STOPPED)

            if not parsed.requires_more_actions or parsed.final_answer is not None:
                return self._finish(state, parsed.final_answer or DEFAULT_FINAL_ANSWER)

            if state.consecutive_errors >= state.max_consecutive_errors:
                logger.warning(
                    "%d consecutive tool failures, injecting recovery prompt",
                    state.consecutive_errors,
                )
                if self.verbose:
                    fmt.recovery(state.consecutive_errors)
                if self.report:
                    self.report.record_recovery(state.step_count, state.consecutive_errors)
                conversation.append(Message("user", RECOVERY_PROMPT))
                state.consecutive_errors = 0
                state.status = LoopStatus.RECOVERING
                continue

            if not executed:
                conversation.append(Message("assistant", text))
            conversation.append(Message("user", CONTINUE_PROMPT))

        return self._forced_summary(conversation, state, primary)

    def _call_model(self, conversation: list[Message], state: LoopState, *, count: bool = True) -> str:
        if count:
            state.step_count += 1
        token_est = None
        if self.verbose or self.report:
            token_est = estimate_tokens(conversation)
        if self.verbose:
            fmt.step_header(state.step_count, state.max_steps, token_est)

        t0 = time.monotonic()
        if self.verbose:
            with fmt.llm_spinner():
                response = self.backend.send(conversation)
        else:
            response = self.backend.send(conversation)
        elapsed = time.monotonic() - t0

        if self.verbose:
            fmt.llm_timing(elapsed)
        if self.report:
            self.report.record_llm_call(state.step_count, elapsed, token_est or 0)
        return response.content or ""

    def _run_steps(self, steps, conversation: list[Message], state: LoopState) -> int:
        """Execute the actions of one parsed response in order. Returns how many ran."""
        executed = 0
        for step in steps:
            state.reasoning_chain.append(f"Thought: {step.thought}")
            if self.verbose and step.thought:
                fmt.thought(step.thought)
            if step.action is None:
                continue

            call = step.action
            call.id = _new_call_id()
            action_text = render_action(call.tool, call.parameters)
            state.reasoning_chain.append(f"Action: {action_text}")

            result = self._dispatch(call, state)
            executed += 1
            call.result = result
            step.observation = result.observation()
            state.reasoning_chain.append(f"Observation: {step.observation}")
            if result.success:
                state.record_success()
            else:
                state.record_failure()

            conversation.append(
                Message(
                    "assistant",
                    f"Thought: {step.thought}\nAction: {action_text}",
                    tool_calls=[call],
                )
            )
            conversation.append(
                Message("tool", step.observation, tool_call_id=call.id, name=call.tool)
            )
            if self._stop_requested:
                break
        return executed

    def _dispatch(self, call: ToolCall, state: LoopState) -> ToolResult:
        if self.verbose:
            fmt.action(call.tool, _pretty_params(call.parameters))
        t0 = time.monotonic()
        result = self.registry.execute(call.tool, call.parameters)
        elapsed = time.monotonic() - t0

        observation = result.observation()
        if self.verbose:
            if result.success:
                fmt.observation(call.tool, elapsed, observation)
            else:
                fmt.observation_error(call.tool, result.error or "unknown error")
        if self.report:
            self.report.record_tool_call(
                state.step_count,
                call.tool,
                call.parameters,
                result.success,
                elapsed,
                len(observation),
                error=result.error,
            )
        return result

    def _forced_summary(self, conversation, state: LoopState, primary) -> Result:
        logger.warning("step budget of %d reached, asking for a summary", state.max_steps)
        if self.verbose:
            fmt.warning(f"reached {state.max_steps} steps, asking for a final summary")
        if self.report:
            self.report.record_forced_summary(state.step_count)
        conversation.append(Message("user", SUMMARY_PROMPT))
        text = self._call_model(conversation, state, count=False)
        parsed = parse_response(text, primary)
        answer = parsed.final_answer or text.strip()
        if not answer:
            answer = f"Stopped after {state.max_steps} steps without a final answer."
        return self._finish(state, answer, LoopStatus.ABORTED)

    def _finish(
        self, state: LoopState, answer: str, status: LoopStatus = LoopStatus.FINISHED
    ) -> Result:
        state.status = status
        self.session.add_message(
            Message(
                "assistant",
                answer,
                metadata={
                    "reasoning_chain": list(state.reasoning_chain),
                    "step_count": state.step_count,
                    "status": status.value,
                },
            )
        )
        if self.verbose:
            fmt.completion(state.step_count, status.value)
        return Result(
            answer=answer,
            mode="react",
            status=status.value,
            steps=state.step_count,
            reasoning_chain=list(state.reasoning_chain),
        )


def format_tool_output(tool: str, result: ToolResult) -> str:
    """Human-readable rendering of a directly invoked tool's result."""
    if not result.success:
        return f"✗ {tool} failed: {result.error}"
    lines = [f"✓ {tool} executed successfully"]
    data = result.data
    if isinstance(data, dict) and isinstance(data.get("files"), list):
        lines.append(f"Found {data.get('count', len(data['files']))} file(s):")
        lines.extend(f"  {f}" for f in data["files"])
    elif isinstance(data, dict) and isinstance(data.get("matches"), list):
        lines.append(f"Found {data.get('count', len(data['matches']))} match(es):")
        lines.extend(f"  {m['file']}:{m['line']}: {m['content']}" for m in data["matches"])
    else:
        body = result.observation()
        if body:
            lines.append(body)
    return "\n".join(lines)


class Agent:
    """Answers user messages with direct tool calls, one-shot replies or the ReAct loop."""

    def __init__(
        self,
        *,
        base_dir: str = ".",
        backend=None,
        registry: ToolRegistry | None = None,
        session: Session | None = None,
        provider: str = "zhipu",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 4000,
        temperature: float | None = 0.7,
        max_steps: int = 10,
        max_consecutive_errors: int = 3,
        mode: str = "auto",
        shell_timeout_ms: int = 120_000,
        max_file_size_mb: float = 10,
        search_results_limit: int = 100,
        enable_background_tasks: bool = True,
        cache_ttl: float = 300,
        cache_size: int = 100,
        mode_cache_size: int = 100,
        yolo: bool = False,
        verbose: bool = False,
        report: ReportCollector | None = None,
    ):
        if mode not in ("auto", "react", "direct"):
            raise AgentError(f"unknown mode {mode!r}, expected auto, react or direct")
        if max_steps < 1 or max_consecutive_errors < 1:
            raise ConfigError(
                "max_steps and max_consecutive_errors must be at least 1, "
                f"got {max_steps} and {max_consecutive_errors}"
            )
        self.base_dir = base_dir
        self.backend = backend if backend is not None else ModelBackend(
            provider=provider,
            model=model,
            api_key=api_key,
            base_url=base_url,
            max_output_tokens=max_output_tokens,
            temperature=temperature,
            cache_ttl=cache_ttl,
            cache_size=cache_size,
        )
        self.registry = registry if registry is not None else default_registry(
            base_dir,
            unrestricted=yolo,
            shell_timeout_ms=shell_timeout_ms,
            max_file_size_mb=max_file_size_mb,
            search_results_limit=search_results_limit,
            enable_background_tasks=enable_background_tasks,
        )
        self.session = session if session is not None else Session()
        self.selector = ModeSelector(cache_size=mode_cache_size)
        self.mode = mode
        self.max_steps = max_steps
        self.max_consecutive_errors = max_consecutive_errors
        self.verbose = verbose
        self.report = report
        self._loop: ReactLoop | None = None

    def respond(self, message: str) -> Result:
        """Answer one user message. Never raises for model or tool failures."""
        message = message.strip()
        self.session.add_message(Message("user", message))

        direct = self.parse_direct_call(message)
        if direct is not None:
            return self.run_tool_call(direct)
        return self._answer(message, allow_reasoning=True)

    def _answer(self, message: str, *, allow_reasoning: bool) -> Result:
        if allow_reasoning and self.wants_reasoning(message):
            if self.verbose:
                fmt.mode_info("react", "multi-step reasoning with tools")
            try:
                return self.run_react()
            except ModelBackendError as e:
                logger.error("reasoning loop aborted: %s", e)
                if self.report:
                    self.report.record_fallback(str(e))
                if self.verbose and not isinstance(e, ModelNotConfiguredError):
                    fmt.warning(f"reasoning loop failed ({e}), falling back to a direct answer")
                return self._answer(message, allow_reasoning=False)
        if self.verbose:
            fmt.mode_info("direct", "single request" if allow_reasoning else "fallback")
        return self.single_shot(fallback=not allow_reasoning)

    def wants_reasoning(self, message: str) -> bool:
        if self.mode == "react":
            return True
        if self.mode == "direct":
            return False
        return self.selector.needs_reasoning(message)

    def run_react(self) -> Result:
        """Run the reasoning loop over the current session."""
        self._loop = ReactLoop(
            self.backend,
            self.registry,
            self.session,
            max_steps=self.max_steps,
            max_consecutive_errors=self.max_consecutive_errors,
            verbose=self.verbose,
            report=self.report,
        )
        try:
            return self._loop.run()
        finally:
            self._loop = None

    def request_stop(self) -> bool:
        """Forward a stop request to a running loop. Returns False when none is running."""
        if self._loop is None:
            return False
        self._loop.request_stop()
        return True

    def single_shot(self, *, fallback: bool = False) -> Result:
        """One model request with native tool calling, plus one follow-up if tools ran."""
        mode = "fallback" if fallback else "direct"
        system = Message("system", build_chat_prompt())
        schemas = self.registry.schemas()
        try:
            response = self.backend.send_cached([system] + self.session.messages(), schemas)
            answer = response.content
            if response.tool_calls:
                observations = self._run_native_calls(response)
                follow_up = self.backend.send([system] + self.session.messages(), schemas)
                answer = follow_up.content or "\n\n".join(observations)
        except ModelNotConfiguredError as e:
            logger.info("model not configured: %s", e)
            return Result(answer=NOT_CONFIGURED_MESSAGE, mode=mode, status="NotConfigured")
        except ModelBackendError as e:
            logger.error("model request failed: %s", e)
            return Result(answer=CONNECTION_FAILED_MESSAGE, mode=mode, status="Failed")

        answer = answer or ""
        self.session.add_message(Message("assistant", answer))
        return Result(answer=answer, mode=mode, status=LoopStatus.FINISHED.value, steps=1)

    def _run_native_calls(self, response) -> list[str]:
        calls = response.tool_calls
        for call in calls:
            call.id = call.id or _new_call_id()
        self.session.add_message(Message("assistant", response.content, tool_calls=calls))
        observations = []
        for call in calls:
            if self.verbose:
                fmt.action(call.tool, _pretty_params(call.parameters))
            t0 = time.monotonic()
            result = self.registry.execute(call.tool, call.parameters)
            elapsed = time.monotonic() - t0
            call.result = result
            if self.verbose:
                if result.success:
                    fmt.observation(call.tool, elapsed, result.observation())
                else:
                    fmt.observation_error(call.tool, result.error or "unknown error")
            if self.report:
                self.report.record_tool_call(
                    0,
                    call.tool,
                    call.parameters,
                    result.success,
                    elapsed,
                    len(result.observation()),
                    error=result.error,
                )
            observations.append(format_tool_output(call.tool, result))
            self.session.add_message(
                Message(
                    "tool",
                    json.dumps(result.to_dict(), default=str, ensure_ascii=False),
                    tool_call_id=call.id,
                    name=call.tool,
                )
            )
        return observations

    def parse_direct_call(self, message: str) -> ToolCall | None:
        """Recognise a message that is exactly one tool call.

        Accepts ``Tool(args)`` and ``/Tool args`` for registered tools.
        """
        primary = self.registry.primary_parameters()
        if message.startswith("/"):
            name, _, rest = message[1:].partition(" ")
            canonical = self.registry.resolve_name(name) if name else None
            if canonical is None:
                return None
            return ToolCall(canonical, parse_arguments(rest, primary.get(canonical)))

        parts = split_call(message)
        if parts is None:
            return None
        name, raw_args, trailing = parts
        canonical = self.registry.resolve_name(name)
        if canonical is None or trailing.strip():
            return None
        return ToolCall(canonical, parse_arguments(raw_args, primary.get(canonical)))

    def run_tool_call(self, call: ToolCall) -> Result:
        """Execute a user-issued tool call without involving the model."""
        if self.verbose:
            fmt.mode_info("tool", call.tool)
            fmt.action(call.tool, _pretty_params(call.parameters))
        call.id = _new_call_id()
        result = self.registry.execute(call.tool, call.parameters)
        call.result = result
        self.session.add_message(Message("assistant", "", tool_calls=[call]))
        self.session.add_message(
            Message("tool", result.observation(), tool_call_id=call.id, name=call.tool)
        )
        return Result(
            answer=format_tool_output(call.tool, result),
            mode="tool",
            status=LoopStatus.FINISHED.value if result.success else "Failed",
        )

    def shutdown(self) -> None:
        """Release tool resources such as background shell commands."""
        for info in self.registry.list():
            tool = self.registry.lookup(info["name"])
            stop = getattr(tool, "shutdown", None)
            if stop is not None:
                stop()


# -- Command line --------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="ponder",
        usage="%(prog)s [options] [question]",
        description="A ReAct-style CLI agent that reasons step by step and uses "
        "file, search and shell tools. Without a question it starts an interactive session.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--base-dir", default=".", help="Project directory the tools operate on (default: .)."
    )
    parser.add_argument(
        "--provider",
        choices=["zhipu", "openai", "anthropic", "lmstudio"],
        default=_UNSET,
        help="LLM provider (default: zhipu; falls back to any provider with an API key).",
    )
    parser.add_argument("--model", default=_UNSET, help="Model id for the provider.")
    parser.add_argument(
        "--api-key", default=_UNSET, help="API key for the provider (overrides env var)."
    )
    parser.add_argument("--base-url", default=_UNSET, help="Override the provider endpoint.")
    parser.add_argument(
        "--max-output-tokens", type=int, default=_UNSET, help="Maximum output tokens (default: 4000)."
    )
    parser.add_argument(
        "--temperature", type=float, default=_UNSET, help="Sampling temperature (default: 0.7)."
    )
    parser.add_argument(
        "--mode",
        choices=["auto", "react", "direct"],
        default=_UNSET,
        help="auto: pick per message; react: always reason with tools; direct: single request.",
    )
    parser.add_argument(
        "--max-steps", type=int, default=_UNSET, help="Reasoning step budget (default: 10)."
    )
    parser.add_argument(
        "--max-consecutive-errors",
        type=int,
        default=_UNSET,
        help="Tool failures in a row before a recovery prompt (default: 3).",
    )
    parser.add_argument(
        "--shell-timeout-ms", type=int, default=_UNSET, help="Default shell timeout (default: 120000)."
    )
    parser.add_argument(
        "--max-file-size-mb", type=float, default=_UNSET, help="Largest file Read accepts (default: 10)."
    )
    parser.add_argument(
        "--search-results-limit", type=int, default=_UNSET, help="Cap for Glob/Grep results (default: 100)."
    )
    parser.add_argument(
        "--cache-ttl", type=float, default=_UNSET, help="Response cache TTL in seconds (default: 300)."
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Allow tools to touch paths outside the base directory.",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE (requires a question).",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=_UNSET,
        help="Diagnostic log level (default: warning).",
    )
    parser.add_argument(
        "--quiet", "-q", action="store_true", default=_UNSET, help="Only print the answer."
    )
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color", action="store_true", default=_UNSET, help="Force ANSI color."
    )
    color_group.add_argument(
        "--no-color", action="store_true", default=_UNSET, help="Disable ANSI color."
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (ponder.toml) template.",
    )
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("ponder")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        return

    if args.report and args.question is None:
        parser.error("--report requires a question")
    if not Path(args.base_dir).is_dir():
        parser.error(f"base directory does not exist: {args.base_dir}")

    try:
        apply_config_to_args(args, load_config(Path(args.base_dir)))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)

    fmt.init(color=args.color, no_color=args.no_color)
    fmt.setup_logging(args.log_level)

    report = ReportCollector() if args.report else None
    agent = None
    try:
        agent = Agent(base_dir=args.base_dir, report=report, **args_to_agent_kwargs(args))
        if args.question is None:
            repl_loop(agent)
            return
        result = run_with_interrupts(agent, args.question)
        print(result.answer)
        if report:
            _write_report(report, args, agent, result)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    finally:
        if agent is not None:
            agent.shutdown()


def _write_report(report: ReportCollector, args, agent: Agent, result: Result) -> None:
    report.finalize(
        task=args.question,
        model=agent.backend.model_name,
        provider=args.provider,
        settings={
            "mode": args.mode,
            "max_steps": args.max_steps,
            "max_consecutive_errors": args.max_consecutive_errors,
            "max_output_tokens": args.max_output_tokens,
            "temperature": args.temperature,
            "yolo": args.yolo,
        },
        outcome=result.status,
        answer=result.answer,
        mode=result.mode,
        steps=result.steps,
    )
    try:
        report.write(args.report)
    except OSError as e:
        fmt.error(f"Failed to write report to {args.report}: {e}")
        return
    if agent.verbose:
        fmt.info(f"Report written to {args.report}")


def run_with_interrupts(agent: Agent, message: str) -> Result:
    """Run agent.respond() with Ctrl-C mapped to a cooperative stop.

    The first Ctrl-C asks the loop to stop after the current tool call; a
    second one raises KeyboardInterrupt.
    """
    pressed = False

    def _on_sigint(signum, frame):
        nonlocal pressed
        if pressed or not agent.request_stop():
            raise KeyboardInterrupt
        pressed = True
        fmt.warning("stopping after the current step; press Ctrl-C again to abort")

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        return agent.respond(message)
    finally:
        signal.signal(signal.SIGINT, previous)


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help                 Show this help message\n"
        "  /clear                Start a new session\n"
        "  /tools                List available tools\n"
        "  /todos                Show the todo list\n"
        "  /todo add <text>      Add a todo\n"
        "  /todo start <id>      Mark a todo in progress\n"
        "  /todo done <id>       Mark a todo completed\n"
        "  /todo rm <id>         Delete a todo\n"
        "  /exit, /quit          Exit the REPL\n"
        'Tools can be called directly, e.g. Glob(pattern="**/*.py") or /Read README.md'
    )


def _repl_tools(agent: Agent) -> None:
    for tool in agent.registry.list():
        fmt.table_line(tool["name"], tool["description"])


def _repl_todos(agent: Agent) -> None:
    todos = agent.session.todos()
    if not todos:
        fmt.info("no todos")
        return
    marks = {"pending": "[ ]", "in_progress": "[~]", "completed": "[x]"}
    for todo in todos:
        fmt.table_line(f"{todo.id}. {marks[todo.status]}", todo.content)


def _repl_todo(agent: Agent, arg: str) -> None:
    action, _, rest = arg.strip().partition(" ")
    rest = rest.strip()
    try:
        if action == "add":
            todo = agent.session.add_todo(rest)
            fmt.info(f"added todo {todo.id}")
        elif action in ("start", "done"):
            status = "in_progress" if action == "start" else "completed"
            agent.session.update_todo(rest, status=status)
            fmt.info(f"todo {rest} marked {status}")
        elif action == "rm":
            agent.session.delete_todo(rest)
            fmt.info(f"removed todo {rest}")
        else:
            fmt.warning("usage: /todo add <text> | start <id> | done <id> | rm <id>")
    except (KeyError, ValueError) as e:
        fmt.warning(str(e).strip("'\""))


def repl_loop(agent: Agent) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(agent.base_dir, ".ponder", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansicyan", "ponder> ")])

    if agent.verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd, _, cmd_arg = line.partition(" ")
        cmd = cmd.lower()
        if cmd == "/help":
            _repl_help()
            continue
        if cmd == "/clear":
            agent.session.clear()
            fmt.info("session cleared")
            continue
        if cmd == "/tools":
            _repl_tools(agent)
            continue
        if cmd == "/todos":
            _repl_todos(agent)
            continue
        if cmd == "/todo":
            _repl_todo(agent, cmd_arg)
            continue

        try:
            result = run_with_interrupts(agent, line)
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
            continue
        print(result.answer)


if __name__ == "__main__":
    main()
