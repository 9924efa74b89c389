"""Tests for ponder.parser: section lexing, step folding and action parsing."""

import pytest

from ponder.models import ToolCall
from ponder.parser import (
    ACTION,
    FINAL,
    OBSERVATION,
    THOUGHT,
    Section,
    coerce_scalar,
    fold_steps,
    guess_parameter_name,
    lex_sections,
    looks_conclusive,
    parse_action,
    parse_arguments,
    parse_response,
    render_action,
    render_step,
    split_call,
)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class TestLexSections:
    def test_labels_in_order(self):
        text = (
            "Thought: look around\n"
            'Action: Glob(pattern="*.py")\n'
            "Observation: a.py\n"
            "Final Answer: one file"
        )
        kinds = [s.kind for s in lex_sections(text)]
        assert kinds == [THOUGHT, ACTION, OBSERVATION, FINAL]

    def test_multiline_section(self):
        text = "Thought: first line\nsecond line\n\nAction: Read(file_path=\"a\")"
        sections = lex_sections(text)
        assert sections[0].text == "first line\nsecond line"

    def test_preamble_dropped(self):
        sections = lex_sections("Sure, let me help.\nThought: ok")
        assert sections == [Section(THOUGHT, "ok")]

    def test_markdown_and_numbered_labels(self):
        text = "**Thought 1:** check\n## Final Answer: done"
        sections = lex_sections(text)
        assert [(s.kind, s.text) for s in sections] == [(THOUGHT, "check"), (FINAL, "done")]

    def test_case_insensitive_and_fullwidth_colon(self):
        sections = lex_sections("thought： 看一下\nFINAL ANSWER: yes")
        assert [(s.kind, s.text) for s in sections] == [(THOUGHT, "看一下"), (FINAL, "yes")]

    def test_action_input_merges_into_action(self):
        text = 'Thought: t\nAction: Read\nAction Input: {"file_path": "a.py"}'
        sections = lex_sections(text)
        assert sections[1] == Section(ACTION, 'Read\n{"file_path": "a.py"}')

    def test_label_inside_sentence_is_not_a_marker(self):
        sections = lex_sections("Thought: the next Action: is unclear")
        assert len(sections) == 1


# ---------------------------------------------------------------------------
# Step folding
# ---------------------------------------------------------------------------


def _stub_parser(text):
    return ToolCall(tool=text)


class TestFoldSteps:
    def test_thought_action_observation(self):
        sections = [Section(THOUGHT, "t"), Section(ACTION, "A"), Section(OBSERVATION, "o")]
        steps = fold_steps(sections, _stub_parser)
        assert len(steps) == 1
        assert steps[0].thought == "t"
        assert steps[0].action.tool == "A"
        assert steps[0].observation == "o"

    def test_action_without_thought_dropped(self):
        steps = fold_steps([Section(ACTION, "A"), Section(THOUGHT, "t")], _stub_parser)
        assert len(steps) == 1
        assert steps[0].action is None

    def test_observation_closes_step(self):
        sections = [
            Section(THOUGHT, "t1"),
            Section(OBSERVATION, "o1"),
            Section(ACTION, "dropped"),
            Section(THOUGHT, "t2"),
        ]
        steps = fold_steps(sections, _stub_parser)
        assert [s.thought for s in steps] == ["t1", "t2"]
        assert steps[1].action is None

    def test_new_thought_pushes_current(self):
        sections = [Section(THOUGHT, "t1"), Section(ACTION, "A"), Section(THOUGHT, "t2")]
        steps = fold_steps(sections, _stub_parser)
        assert [s.thought for s in steps] == ["t1", "t2"]
        assert steps[0].action.tool == "A"
        assert steps[0].observation is None

    def test_final_answer_sections_ignored(self):
        assert fold_steps([Section(FINAL, "x")], _stub_parser) == []

    def test_unparseable_action_logged(self, caplog, monkeypatch):
        import logging

        monkeypatch.setattr(logging.getLogger("ponder"), "propagate", True)
        with caplog.at_level(logging.WARNING, logger="ponder.parser"):
            steps = fold_steps([Section(THOUGHT, "t"), Section(ACTION, "???")], lambda s: None)
        assert steps[0].action is None
        assert any("could not parse action" in r.getMessage() for r in caplog.records)


# ---------------------------------------------------------------------------
# Whole responses
# ---------------------------------------------------------------------------


class TestParseResponse:
    def test_full_triple_with_final_answer(self):
        text = (
            "Thought: I should list the files\n"
            'Action: Glob(pattern="**/*.ts")\n'
            "Observation: a.ts, b.ts\n"
            "Final Answer: X"
        )
        parsed = parse_response(text)
        assert len(parsed.steps) == 1
        step = parsed.steps[0]
        assert step.thought and step.action and step.observation
        assert parsed.final_answer == "X"
        assert parsed.requires_more_actions is False

    def test_short_thought_needs_more(self):
        parsed = parse_response("Thought: I should look at the config")
        assert len(parsed.steps) == 1
        assert parsed.steps[0].thought == "I should look at the config"
        assert parsed.steps[0].action is None
        assert parsed.final_answer is None
        assert parsed.requires_more_actions is True

    def test_long_thought_promoted(self):
        thought = "x" * 150
        parsed = parse_response(f"Thought: {thought}")
        assert parsed.final_answer == thought
        assert parsed.steps[0].finish is True
        assert parsed.requires_more_actions is False

    @pytest.mark.parametrize(
        "thought",
        ["In conclusion, it works", "Therefore the bug is fixed", "综上所述，没有问题"],
    )
    def test_conclusive_keyword_promoted(self, thought):
        parsed = parse_response(f"Thought: {thought}")
        assert parsed.final_answer == thought
        assert parsed.steps[0].finish

    def test_thought_with_action_not_promoted(self):
        text = "Thought: " + "y" * 150 + '\nAction: Read(file_path="a.py")'
        parsed = parse_response(text)
        assert parsed.final_answer is None
        assert parsed.requires_more_actions is True

    def test_final_answer_with_dangling_step(self):
        text = 'Thought: one more\nAction: Read(file_path="a.py")\nFinal Answer: done'
        parsed = parse_response(text)
        assert parsed.final_answer == "done"
        assert parsed.steps[0].action.tool == "Read"
        assert parsed.requires_more_actions is False

    def test_first_final_answer_wins(self):
        parsed = parse_response("Final Answer: first\nFinal Answer: second")
        assert parsed.final_answer == "first"

    def test_no_protocol(self):
        parsed = parse_response("The capital of France is Paris.")
        assert parsed.steps == []
        assert parsed.final_answer is None
        assert parsed.requires_more_actions is False

    def test_primary_params_name_positional(self):
        parsed = parse_response('Thought: t\nAction: Grep("TODO")', {"Grep": "pattern"})
        assert parsed.steps[0].action.parameters == {"pattern": "TODO"}


def test_looks_conclusive():
    assert looks_conclusive("To summarize, all good")
    assert looks_conclusive("a" * 101)
    assert not looks_conclusive("a" * 100)
    assert not looks_conclusive("keep looking")


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class TestParseAction:
    def test_read(self):
        call = parse_action('Read(file_path="./a.ts")')
        assert call.tool == "Read"
        assert call.parameters == {"file_path": "./a.ts"}

    def test_bash_timeout_is_a_number(self):
        call = parse_action('Bash(command="ls -la", timeout=5000)')
        assert call.parameters == {"command": "ls -la", "timeout": 5000}
        assert isinstance(call.parameters["timeout"], int)

    def test_invoke_becomes_shell(self):
        call = parse_action('invoke(command="git status")')
        assert call == ToolCall(tool="shell", parameters={"command": "git status"})

    def test_invoke_without_command(self):
        assert parse_action('invoke(path="x")') is None

    def test_json_arguments(self):
        call = parse_action('Edit({"file_path": "a.py", "replace_all": true})')
        assert call.parameters == {"file_path": "a.py", "replace_all": True}

    def test_single_quotes_and_bare_tokens(self):
        call = parse_action("Grep(pattern='def main', case_insensitive=true, head_limit=5)")
        assert call.parameters == {
            "pattern": "def main",
            "case_insensitive": True,
            "head_limit": 5,
        }

    def test_bare_multiword_value(self):
        call = parse_action("Bash(command=ls -la, timeout=100)")
        assert call.parameters == {"command": "ls -la", "timeout": 100}

    def test_backticks_and_fences_stripped(self):
        assert parse_action('`Read(file_path="a")`').parameters == {"file_path": "a"}
        fenced = '```python\nRead(file_path="a")\n```'
        assert parse_action(fenced).tool == "Read"

    def test_missing_close_paren(self):
        call = parse_action('Read(file_path="a.py"')
        assert call.parameters == {"file_path": "a.py"}

    def test_line_form_key_values(self):
        call = parse_action("Read\nfile_path: src/app.py\nlimit: 20")
        assert call.tool == "Read"
        assert call.parameters == {"file_path": "src/app.py", "limit": 20}

    def test_line_form_json(self):
        call = parse_action('Read\n{"file_path": "a.py"}')
        assert call.parameters == {"file_path": "a.py"}

    def test_line_form_inline_pairs(self):
        call = parse_action('Glob pattern="*.md"')
        assert call.tool == "Glob"
        assert call.parameters == {"pattern": "*.md"}

    def test_action_input_bare_value(self):
        parsed = parse_response("Thought: t\nAction: Read\nAction Input: README.md")
        action = parsed.steps[0].action
        assert action.tool == "Read"
        assert action.parameters == {"file_path": "README.md"}

    def test_line_form_bare_value_uses_primary(self):
        call = parse_action("Bash\nls -la", {"Bash": "command"})
        assert call.parameters == {"command": "ls -la"}

    def test_line_form_bare_prose_is_not_an_argument(self):
        assert parse_action("Read the file\nthen decide") is None

    @pytest.mark.parametrize("text", ["None", "N/A", "", "   "])
    def test_no_action(self, text):
        assert parse_action(text) is None


class TestArguments:
    @pytest.mark.parametrize(
        "value,name",
        [
            ("src/main.py", "file_path"),
            ("README.md", "file_path"),
            ("**/*.ts", "pattern"),
            ("https://example.com/a.html", "url"),
            ("needle", "query"),
        ],
    )
    def test_positional_name_guess(self, value, name):
        assert parse_arguments(f'"{value}"') == {name: value}
        assert guess_parameter_name(value) == name

    def test_unquoted_positional(self):
        assert parse_arguments("src/main.py") == {"file_path": "src/main.py"}

    def test_primary_overrides_guess(self):
        assert parse_arguments('"ls"', primary="command") == {"command": "ls"}

    def test_json_list(self):
        assert parse_arguments("[1, 2]") == {"args": [1, 2]}

    def test_empty(self):
        assert parse_arguments("  ") == {}

    def test_colon_pairs(self):
        assert parse_arguments('file_path: "a.py", limit: 3') == {"file_path": "a.py", "limit": 3}

    @pytest.mark.parametrize(
        "token,expected",
        [
            ("true", True),
            ("False", False),
            ("null", None),
            ("undefined", None),
            ("none", "none"),
            ("None", "None"),
            ("42", 42),
            ("-1.5", -1.5),
            ("1e3", 1000.0),
            ("inf", "inf"),
            ("12abc", "12abc"),
        ],
    )
    def test_coerce_scalar(self, token, expected):
        assert coerce_scalar(token) == expected

    def test_bare_none_is_kept_as_text(self):
        assert parse_arguments("pattern=none") == {"pattern": "none"}

    def test_split_call(self):
        assert split_call('Read(file_path="a") trailing') == ("Read", 'file_path="a"', " trailing")
        assert split_call("no call here") is None


class TestRendering:
    @pytest.mark.parametrize(
        "call",
        [
            ToolCall("Read", {"file_path": "./a.ts"}),
            ToolCall("Bash", {"command": 'echo "hi, there"', "timeout": 5000}),
            ToolCall("Grep", {"pattern": "a=b", "case_insensitive": True}),
            ToolCall("Edit", {"file_path": "x", "old_string": "(", "new_string": ")"}),
            ToolCall("Glob", {}),
        ],
    )
    def test_render_then_parse(self, call):
        parsed = parse_action(render_action(call.tool, call.parameters))
        assert parsed.tool == call.tool
        assert parsed.parameters == call.parameters

    def test_render_step(self):
        parsed = parse_response('Thought: t\nAction: Read(file_path="a")\nObservation: body')
        assert render_step(parsed.steps[0]) == (
            'Thought: t\nAction: Read(file_path="a")\nObservation: body'
        )
