"""Tests for ignore rules."""

from visaire.ignore import DEFAULT_IGNORES, IgnoreRules


class TestMatching:
    def test_component_patterns(self):
        rules = IgnoreRules()
        assert rules.matches("node_modules/react/index.js")
        assert rules.matches("src/__pycache__/mod.pyc")
        assert rules.matches("debug.log")
        assert not rules.matches("src/app.py")
        assert not rules.matches("")

    def test_slash_patterns_match_whole_path(self):
        rules = IgnoreRules(["docs/build"])
        assert rules.matches("docs/build")
        assert rules.matches("docs/build/index.html")
        assert not rules.matches("build")

    def test_add_normalizes_and_dedupes(self):
        rules = IgnoreRules([])
        rules.add("/out/")
        rules.add("out")
        rules.add("   ")
        assert rules.patterns == ["out"]

    def test_windows_separators(self):
        assert IgnoreRules().matches("a\\node_modules\\b.js")


class TestForRoot:
    def test_reads_ignore_files(self, workspace):
        (workspace / ".gitignore").write_text("# comment\n*.secret\n!keep.secret\n/generated/\n")
        (workspace / ".visaireignore").write_text("fixtures\n")
        rules = IgnoreRules.for_root(workspace, extra=["*.bak"])
        for pattern in ("*.secret", "generated", "fixtures", "*.bak"):
            assert pattern in rules.patterns
        assert "!keep.secret" not in rules.patterns
        assert set(DEFAULT_IGNORES) <= set(rules.patterns)

    def test_walk_prunes_ignored(self, workspace):
        (workspace / "src").mkdir()
        (workspace / "src" / "app.py").write_text("")
        (workspace / "node_modules" / "pkg").mkdir(parents=True)
        (workspace / "node_modules" / "pkg" / "index.js").write_text("")
        (workspace / ".env").write_text("")
        (workspace / "run.log").write_text("")

        rules = IgnoreRules.for_root(workspace)
        found = sorted(p.relative_to(workspace).as_posix() for p in rules.walk(workspace))
        assert found == [".env", "src/app.py"]

        visible = [p.name for p in rules.walk(workspace, include_hidden=False)]
        assert visible == ["app.py"]
