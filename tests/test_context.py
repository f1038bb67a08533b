"""Tests for the context builder."""

from __future__ import annotations

import os
import time

from visaire.context import (
    CACHE_TTL,
    SNAPSHOT_HISTORY,
    ContextBuilder,
    file_type,
    importance_score,
    order_files,
)
from visaire.models.types import (
    Action,
    FileDescriptor,
    Message,
    MessageRole,
    RetentionPolicy,
)


def _populate(root):
    (root / "main.py").write_text("import os\nfrom app.util import helper\n\ndef main():\n    pass\n")
    (root / "pyproject.toml").write_text(
        '[project]\nname = "demo"\ndependencies = ["httpx>=0.27", "rich"]\n'
    )
    (root / "src").mkdir()
    (root / "src" / "util.js").write_text("const fs = require('fs');\nfunction read() {}\n")
    (root / "node_modules").mkdir()
    (root / "node_modules" / "dep.js").write_text("module.exports = {}\n")
    (root / "debug.log").write_text("noise\n")


class TestScoring:
    def test_root_entry_point_outranks_nested_text(self):
        now = time.time()
        main = importance_score("main.py", 100, now, now)
        nested = importance_score("docs/notes.txt", 100, now - 40 * 86400, now)
        assert main == 10 + 5 + 3 + 5 + 2
        assert nested == 2
        assert main > nested

    def test_file_type(self):
        assert file_type("a/b.py") == "python"
        assert file_type("x.tsx") == "typescript"
        assert file_type("Makefile") == "file"
        assert file_type("data.csv") == "csv"

    def test_order_files_policies(self):
        files = [
            FileDescriptor(path="b.txt", size=1, mtime=1.0, type="text", importance=1),
            FileDescriptor(path="a.txt", size=1, mtime=3.0, type="text", importance=5),
            FileDescriptor(path="c.txt", size=1, mtime=2.0, type="text", importance=5),
        ]
        assert [f.path for f in order_files(files, RetentionPolicy.IMPORTANCE)] == [
            "a.txt", "c.txt", "b.txt",
        ]
        assert [f.path for f in order_files(files, RetentionPolicy.RECENCY)] == [
            "a.txt", "c.txt", "b.txt",
        ]
        assert [f.path for f in order_files(files, RetentionPolicy.FIFO)] == [
            "b.txt", "a.txt", "c.txt",
        ]


class TestBuild:
    async def test_snapshot_sections(self, workspace):
        _populate(workspace)
        builder = ContextBuilder(workspace)
        messages = [Message(role=MessageRole.USER, content="hi")]
        snapshot = await builder.build(messages)

        paths = [f.path for f in snapshot.files]
        assert "main.py" in paths
        assert "src/util.js" in paths
        assert not any(p.startswith("node_modules") for p in paths)
        assert "debug.log" not in paths
        assert paths[0] in ("main.py", "pyproject.toml")
        assert snapshot.total_files == 3

        assert snapshot.code_structure["main.py"]["functions"] == ["main"]
        assert "app.util" in snapshot.dependency_map
        assert snapshot.dependencies["manifest"] == "pyproject.toml"
        assert "httpx" in snapshot.dependencies["dependencies"]
        assert "python-package" in snapshot.project_structure["patterns"]
        assert snapshot.conversation == [{"role": "user", "content": "hi"}]
        assert snapshot.environment["cwd"] == str(workspace.resolve())
        assert snapshot.retention_applied is None
        assert builder.last_snapshot is snapshot

    async def test_gitignore_respected(self, workspace):
        (workspace / ".gitignore").write_text("secret/\n# comment\n")
        (workspace / "secret").mkdir()
        (workspace / "secret" / "key.txt").write_text("x")
        (workspace / "keep.txt").write_text("y")

        snapshot = await ContextBuilder(workspace).build()
        paths = {f.path for f in snapshot.files}
        assert "keep.txt" in paths
        assert "secret/key.txt" not in paths

    async def test_retention_fits_budget(self, workspace):
        for i in range(60):
            (workspace / f"file_{i:02d}.txt").write_text("x" * 10)
        builder = ContextBuilder(workspace, max_context_size=3000)
        snapshot = await builder.build()

        assert snapshot.serialized_size() <= 3000
        assert snapshot.retention_applied == RetentionPolicy.IMPORTANCE
        assert len(snapshot.files) <= 20
        assert snapshot.total_files == 60

    async def test_fifo_retention_keeps_scan_order(self, workspace):
        for i in range(30):
            (workspace / f"f{i:02d}.txt").write_text("x")
        builder = ContextBuilder(workspace, max_context_size=2000, retention_policy="fifo")
        snapshot = await builder.build()
        assert snapshot.retention_applied == RetentionPolicy.FIFO
        paths = [f.path for f in snapshot.files]
        assert paths == sorted(paths)
        assert paths[0] == "f00.txt"

    async def test_render(self, workspace):
        _populate(workspace)
        builder = ContextBuilder(workspace)
        await builder.build()
        text = builder.render()
        assert text.startswith(f"Working directory: {workspace.resolve()}")
        assert "main.py (python" in text
        assert "Dependencies (pyproject.toml): httpx, rich" in text
        assert "main.py: main" in text


class TestCache:
    async def test_summary_cached_until_mtime_changes(self, workspace):
        target = workspace / "mod.py"
        target.write_text("def a():\n    pass\n")
        builder = ContextBuilder(workspace)

        await builder.build()
        await builder.build()
        assert builder.cache_stats()["hits"] == 1

        target.write_text("def a():\n    pass\n\ndef b():\n    pass\n")
        later = time.time() + 5
        os.utime(target, (later, later))
        snapshot = await builder.build()
        assert snapshot.code_structure["mod.py"]["functions"] == ["a", "b"]
        assert builder.cache_stats()["misses"] == 2

    async def test_update_after_actions_invalidates(self, workspace):
        (workspace / "mod.py").write_text("def a():\n    pass\n")
        builder = ContextBuilder(workspace)
        await builder.build()
        assert builder.cache_stats()["entries"] == 1

        builder.update_after_actions(
            [Action(type="writeFile", tool="filesystem", method="writeFile",
                    params=["mod.py", "def b():\n    pass\n"])]
        )
        assert builder.cache_stats()["entries"] == 0

    async def test_binary_file_not_summarized(self, workspace):
        (workspace / "blob.py").write_bytes(b"\x00\x01\x02binary")
        snapshot = await ContextBuilder(workspace).build()
        assert "blob.py" not in snapshot.code_structure

    async def test_cleanup(self, workspace):
        (workspace / "mod.py").write_text("x = 1\n")
        builder = ContextBuilder(workspace)
        await builder.build()
        assert builder.cleanup(full=True) == 1
        assert builder.cache_stats() == {"entries": 0, "hits": 0, "misses": 0, "snapshots": 0}
        assert builder.last_snapshot is None

    async def test_cleanup_evicts_only_stale_summaries(self, workspace):
        (workspace / "old.py").write_text("x = 1\n")
        (workspace / "new.py").write_text("y = 2\n")
        builder = ContextBuilder(workspace)
        await builder.build()
        assert builder.cache_stats()["entries"] == 2

        mtime, _, summary = builder._ast_cache["old.py"]
        builder._ast_cache["old.py"] = (mtime, time.time() - CACHE_TTL - 1, summary)

        assert builder.cleanup() == 1
        assert list(builder._ast_cache) == ["new.py"]
        assert builder.last_snapshot is not None

    async def test_snapshot_history_bounded(self, workspace):
        builder = ContextBuilder(workspace)
        for _ in range(SNAPSHOT_HISTORY + 3):
            await builder.build()
        assert builder.cache_stats()["snapshots"] == SNAPSHOT_HISTORY
