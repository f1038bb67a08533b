"""Tests for action extraction and prompt composition."""

from __future__ import annotations

import re

from visaire.models.types import ActionType, EffortLevel
from visaire.reasoning import (
    ActionPattern,
    ReasoningEngine,
    continuation_prompt,
    extract_path,
    is_complete,
    max_iterations_for,
)


def _engine() -> ReasoningEngine:
    return ReasoningEngine()


class TestExtractFiles:
    def test_create_file_with_code_block(self):
        prompt = "Create a file called `hello.txt` with hello world"
        reply = "Sure, here it is:\n```\nhello world\n```\n"
        actions = _engine().extract(prompt, reply)
        assert len(actions) == 1
        action = actions[0]
        assert action.type == ActionType.CREATE_FILE
        assert action.tool == "filesystem"
        assert action.method == "writeFile"
        assert action.params == ["hello.txt", "hello world"]
        assert action.destructive is True

    def test_create_file_inline_content(self):
        actions = _engine().extract("Create a file called `notes.md` with buy milk", "")
        assert actions[0].params == ["notes.md", "buy milk"]

    def test_create_file_without_content_is_empty(self):
        actions = _engine().extract("create file empty.txt", "")
        assert actions[0].params == ["empty.txt", ""]

    def test_block_lead_in_picks_matching_file(self):
        reply = (
            "Create `a.py` and create `b.py`.\n\n"
            "For b.py:\n```python\nprint('b')\n```\n\n"
            "For a.py:\n```python\nprint('a')\n```\n"
        )
        actions = _engine().extract("", reply)
        by_name = {a.params[0]: a.params[1] for a in actions}
        assert by_name == {"a.py": "print('a')", "b.py": "print('b')"}

    def test_update_without_content_is_skipped(self):
        assert _engine().extract("update the file config.json", "") == []

    def test_update_with_block(self):
        reply = "Update `config.json`:\n```json\n{\"debug\": true}\n```"
        (action,) = _engine().extract("", reply)
        assert action.type == ActionType.WRITE_FILE
        assert action.params == ["config.json", '{"debug": true}']

    def test_two_files_keep_text_order(self):
        prompt = "Create `a.txt`, then create `b.txt`"
        actions = _engine().extract(prompt, "")
        assert [a.params[0] for a in actions] == ["a.txt", "b.txt"]

    def test_copy_and_move(self):
        actions = _engine().extract("copy `a.txt` to `b.txt` and rename `c.txt` to `d.txt`", "")
        methods = {a.method: a.params for a in actions}
        assert methods["copyFile"] == ["a.txt", "b.txt"]
        assert methods["moveFile"] == ["c.txt", "d.txt"]

    def test_delete_and_read(self):
        actions = _engine().extract("delete old.log then read README.md", "")
        methods = {a.method: a.params for a in actions}
        assert methods["deleteFile"] == ["old.log"]
        assert methods["readFile"] == ["README.md"]

    def test_list_directory_defaults_to_cwd(self):
        (action,) = _engine().extract("list files", "")
        assert action.method == "listDirectory"
        assert action.params == ["."]

    def test_create_directory(self):
        (action,) = _engine().extract("create a directory called src", "")
        assert action.method == "createDirectory"
        assert action.params == ["src"]
        assert action.destructive is False


class TestExtractCommands:
    def test_run_command(self):
        (action,) = _engine().extract("Run `rm -rf /`", "")
        assert action.type == ActionType.RUN_COMMAND
        assert action.tool == "exec"
        assert action.method == "executeCommand"
        assert action.params == ["rm -rf /"]
        assert action.destructive is True

    def test_install_package_with_version(self):
        (action,) = _engine().extract("install package `lodash@4.17.21`", "")
        assert action.method == "installPackage"
        assert action.params == ["lodash", {"version": "4.17.21"}]

    def test_install_scoped_package_dev(self):
        (action,) = _engine().extract("npm install @types/node --save-dev", "")
        assert action.params == ["@types/node", {"dev": True}]

    def test_install_stop_word_ignored(self):
        assert _engine().extract("install the dependencies", "") == []

    def test_run_script(self):
        (action,) = _engine().extract("then npm run build", "")
        assert action.method == "runScript"
        assert action.params == ["build"]

    def test_run_of_bare_install_stays_install(self):
        (action,) = _engine().extract("Run `npm install express`", "")
        assert action.method == "installPackage"
        assert action.params[0] == "express"

    def test_chained_command_kept_whole(self):
        actions = _engine().extract("Run `rm -rf build && npm install express`", "")
        assert [(a.method, a.params) for a in actions] == [
            ("executeCommand", ["rm -rf build && npm install express"]),
        ]

    def test_chained_script_kept_whole(self):
        actions = _engine().extract("Run `npm run build && rm -rf dist`", "")
        assert [a.method for a in actions] == ["executeCommand"]

    def test_named_script_phrase(self):
        (action,) = _engine().extract("run the `build` script", "")
        assert action.method == "runScript"


class TestOrdering:
    def test_confidence_then_position(self):
        text = "read notes.txt, run `ls`, create `x.txt`"
        actions = _engine().extract(text, "")
        assert [a.method for a in actions] == ["writeFile", "executeCommand", "readFile"]

    def test_duplicate_target_keeps_first(self):
        prompt = "Create `a.txt` with one"
        reply = "I'll create `a.txt` now."
        actions = _engine().extract(prompt, reply)
        assert len(actions) == 1
        assert actions[0].position == 0

    def test_custom_pattern(self):
        engine = _engine()
        engine.add_action_pattern(
            ActionPattern(
                "ping",
                re.compile(r"\bping\s+(\S+)"),
                "network",
                "checkUrl",
                0.95,
                extract_path,
            )
        )
        (action,) = engine.extract("ping example.com", "")
        assert action.type == "ping"
        assert action.params == ["example.com"]
        assert action.destructive is False
        assert engine.list_patterns()[-1].type == "ping"


class TestPlan:
    def test_cap_drops_lowest_confidence(self):
        prompt = "read notes.txt, run `ls`, create `x.txt`"
        actions, dropped, record = _engine().plan(prompt, "", max_actions=2)
        assert [a.method for a in actions] == ["writeFile", "executeCommand"]
        assert [a.method for a in dropped] == ["readFile"]
        assert len(record.decisions) == 2
        assert len(record.dropped) == 1
        assert "dropped" in record.explanation

    def test_no_actions(self):
        actions, dropped, record = _engine().plan("hello there", "Hi!")
        assert actions == [] and dropped == []
        assert record.explanation == "No actionable instructions detected"

    def test_destructive_marked_in_decisions(self):
        _, _, record = _engine().plan("Run `ls -la`", "", effort="high")
        assert record.effort == EffortLevel.HIGH
        assert "destructive" in record.decisions[0]


class TestPrompts:
    def test_compose_includes_context_and_request(self):
        text = _engine().compose_prompt("fix the bug", "low", "Files: main.py")
        assert text.startswith("You are Visaire")
        assert "Project context:\nFiles: main.py" in text
        assert "User Request: fix the bug" in text
        assert "task complete" in text

    def test_effort_changes_system_prompt(self):
        engine = _engine()
        prompts = {engine.system_prompt(e) for e in EffortLevel}
        assert len(prompts) == 4

    def test_iteration_caps(self):
        assert max_iterations_for("low") == 1
        assert max_iterations_for(EffortLevel.MEDIUM) == 3
        assert max_iterations_for("high") == 6
        assert max_iterations_for("maximum") == 10

    def test_is_complete(self):
        assert is_complete("All good. Task complete.")
        assert is_complete("I'm done")
        assert not is_complete("abandoned the plan")
        assert not is_complete("")

    def test_continuation_prompt(self):
        text = continuation_prompt("build it", 4, 1)
        assert '"build it"' in text
        assert "actions executed: 4" in text
        assert "errors: 1" in text
