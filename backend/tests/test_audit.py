"""Tests for the audit logger."""

import json
from unittest.mock import MagicMock

import pytest

from storagesync.services.audit import AuditLogger


class TestAuditLogger:
    """Tests for recording and querying audit entries."""

    @pytest.mark.asyncio
    async def test_log_connection(self, audit):
        await audit.log_connection(1, "dropbox", connected=True, metadata={"scope": "files"})

        logs = await audit.get_user_logs(1)
        assert len(logs) == 1
        assert logs[0].action == "storage_connected"
        assert logs[0].resource_type == "storage_connection"
        assert logs[0].resource_id == "dropbox"
        assert logs[0].details == {"scope": "files"}

    @pytest.mark.asyncio
    async def test_log_file_operation(self, audit):
        await audit.log_file_operation("delete", "F1", user_id=1, metadata={"photo_id": 3})

        logs = await audit.get_logs_by_action("file_delete")
        assert [log.resource_id for log in logs] == ["F1"]
        assert logs[0].resource_type == "file"

    @pytest.mark.asyncio
    async def test_log_error_records_type_and_message(self, audit):
        await audit.log_error("sync:google-drive", ValueError("bad page"), user_id=2)

        (log,) = await audit.get_resource_logs("system", "sync:google-drive")
        assert log.action == "error"
        assert log.details["message"] == "bad page"
        assert log.details["error_type"] == "ValueError"

    @pytest.mark.asyncio
    async def test_log_conflict(self, audit):
        conflicts = [{"type": "folder_missing", "details": "gone", "gallery_id": 1}]

        await audit.log_conflict(1, "dropbox", conflicts)

        (log,) = await audit.get_logs_by_action("sync_conflict")
        assert log.details == {"conflicts": conflicts, "count": 1}

    @pytest.mark.asyncio
    async def test_queries_return_newest_first(self, audit):
        for i in range(3):
            await audit.log("file_upload", "file", f"F{i}", user_id=1)

        logs = await audit.get_user_logs(1, limit=2)

        assert [log.resource_id for log in logs] == ["F2", "F1"]

    @pytest.mark.asyncio
    async def test_metadata_stored_as_json(self, audit):
        await audit.log("file_upload", "file", "F1", metadata={"size": 10})

        (log,) = await audit.get_logs_by_action("file_upload")
        assert json.loads(log.metadata_json) == {"size": 10}

    @pytest.mark.asyncio
    async def test_failure_never_raises(self):
        broken = MagicMock(side_effect=RuntimeError("database is gone"))
        audit = AuditLogger(broken)

        # Should not raise
        await audit.log_connection(1, "dropbox", connected=False)
