"""Tests for engine/backends.py."""

from pathlib import Path

import pytest

from changeflow.engine.backends import FileSessionBackend, MemorySessionBackend, is_valid_session_id
from changeflow.exceptions import StoreUnavailableError


class TestSessionIds:
    def test_valid_ids(self):
        assert is_valid_session_id("change_2410_9f3a61c2")
        assert is_valid_session_id("init_my-site_2410_9f3a61c2")

    def test_invalid_ids(self):
        assert not is_valid_session_id("")
        assert not is_valid_session_id("../etc/passwd")
        assert not is_valid_session_id("a/b")
        assert not is_valid_session_id("_leading")


class TestFileSessionBackend:
    """Tests for FileSessionBackend."""

    def test_creates_directory(self, tmp_path: Path):
        state_dir = tmp_path / "nested" / "sessions"

        FileSessionBackend(state_dir)

        assert state_dir.is_dir()

    @pytest.mark.asyncio
    async def test_save_and_load(self, temp_state_dir: Path):
        backend = FileSessionBackend(temp_state_dir)

        await backend.save("change_2410_aa", {"id": "change_2410_aa", "progress": 10})

        assert await backend.load("change_2410_aa") == {"id": "change_2410_aa", "progress": 10}
        assert (temp_state_dir / "change_2410_aa.json").exists()
        assert not (temp_state_dir / "change_2410_aa.tmp").exists()

    @pytest.mark.asyncio
    async def test_load_missing(self, temp_state_dir: Path):
        assert await FileSessionBackend(temp_state_dir).load("change_2410_aa") is None

    @pytest.mark.asyncio
    async def test_corrupt_record_raises(self, temp_state_dir: Path):
        (temp_state_dir / "change_2410_aa.json").write_text("{not json")

        with pytest.raises(StoreUnavailableError):
            await FileSessionBackend(temp_state_dir).load("change_2410_aa")

    @pytest.mark.asyncio
    async def test_list_ids_ignores_audit_logs(self, temp_state_dir: Path):
        backend = FileSessionBackend(temp_state_dir)
        await backend.save("change_2410_bb", {})
        await backend.save("change_2410_aa", {})
        await backend.append_audit("change_2410_aa", {"message": "hello"})

        assert await backend.list_ids() == ["change_2410_aa", "change_2410_bb"]

    @pytest.mark.asyncio
    async def test_audit_log_appends(self, temp_state_dir: Path):
        backend = FileSessionBackend(temp_state_dir)

        await backend.append_audit("change_2410_aa", {"message": "one"})
        await backend.append_audit("change_2410_aa", {"message": "two"})

        assert await backend.read_audit("change_2410_aa") == [{"message": "one"}, {"message": "two"}]

    @pytest.mark.asyncio
    async def test_corrupt_audit_lines_are_skipped(self, temp_state_dir: Path):
        (temp_state_dir / "change_2410_aa.log.jsonl").write_text('{"message": "ok"}\nbroken\n\n')

        entries = await FileSessionBackend(temp_state_dir).read_audit("change_2410_aa")

        assert entries == [{"message": "ok"}]

    @pytest.mark.asyncio
    async def test_delete_removes_both_files(self, temp_state_dir: Path):
        backend = FileSessionBackend(temp_state_dir)
        await backend.save("change_2410_aa", {})
        await backend.append_audit("change_2410_aa", {"message": "x"})

        await backend.delete("change_2410_aa")
        await backend.delete("change_2410_aa")

        assert list(temp_state_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_unsafe_id_rejected(self, temp_state_dir: Path):
        with pytest.raises(ValueError):
            await FileSessionBackend(temp_state_dir).save("../escape", {})


class TestMemorySessionBackend:
    @pytest.mark.asyncio
    async def test_records_are_copies(self):
        backend = MemorySessionBackend()
        record = {"id": "x", "logs": []}

        await backend.save("x", record)
        record["logs"].append("mutated")

        assert await backend.load("x") == {"id": "x", "logs": []}

    @pytest.mark.asyncio
    async def test_delete_clears_audit(self):
        backend = MemorySessionBackend()
        await backend.save("x", {})
        await backend.append_audit("x", {"message": "m"})

        await backend.delete("x")

        assert await backend.load("x") is None
        assert await backend.read_audit("x") == []
