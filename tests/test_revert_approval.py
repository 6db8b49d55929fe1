"""Tests for the revert ledger, the UI channel and the approval gate."""

import asyncio
import os
import sys

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from codeagent.approval import ApprovalGate
from codeagent.channel import UIChannel
from codeagent.revert import (
    FileSnapshot,
    RevertLedger,
    extract_revert_ids,
    format_revert_tag,
    strip_revert_tags,
)


# ============================================================
# Revert ledger
# ============================================================

class TestRevertLedger:
    def test_restore_existing_file(self, tmp_path):
        target = tmp_path / "a.txt"
        target.write_text("before")
        ledger = RevertLedger(relpath=lambda p: p.name)
        change_id = ledger.register([FileSnapshot.capture(target)])
        target.write_text("after")

        result = ledger.revert(change_id)
        assert result == "Revert complete.\nRestored a.txt."
        assert target.read_text() == "before"

    def test_revert_created_file_removes_it(self, tmp_path):
        target = tmp_path / "new.txt"
        ledger = RevertLedger(relpath=lambda p: p.name)
        change_id = ledger.register([FileSnapshot.capture(target)])
        target.write_text("created")

        assert ledger.revert(change_id) == "Revert complete.\nRemoved new.txt."
        assert not target.exists()

    def test_revert_recreates_deleted_file_and_parents(self, tmp_path):
        target = tmp_path / "pkg" / "mod.py"
        target.parent.mkdir()
        target.write_text("x = 1\n")
        ledger = RevertLedger()
        change_id = ledger.register([FileSnapshot.capture(target)])
        target.unlink()
        target.parent.rmdir()

        ledger.revert(change_id)
        assert target.read_text() == "x = 1\n"

    def test_crlf_preserved(self, tmp_path):
        target = tmp_path / "win.txt"
        target.write_bytes(b"a\r\nb\r\n")
        ledger = RevertLedger()
        change_id = ledger.register([FileSnapshot.capture(target)])
        target.write_bytes(b"changed")
        ledger.revert(change_id)
        assert target.read_bytes() == b"a\r\nb\r\n"

    def test_entry_is_consumed(self, tmp_path):
        target = tmp_path / "a.txt"
        target.write_text("x")
        ledger = RevertLedger()
        change_id = ledger.register([FileSnapshot.capture(target)])
        ledger.revert(change_id)
        assert ledger.revert(change_id) == "Revert failed: change not found or expired."

    def test_missing_id(self):
        assert RevertLedger().revert("  ") == "Revert failed: missing change id."

    def test_ring_evicts_oldest(self, tmp_path):
        target = tmp_path / "a.txt"
        ledger = RevertLedger(max_entries=3)
        ids = [ledger.register([FileSnapshot.capture(target)]) for _ in range(5)]
        assert len(ledger) == 3
        assert ids[0] not in ledger and ids[1] not in ledger
        assert all(i in ledger for i in ids[2:])
        assert ledger.revert(ids[0]) == "Revert failed: change not found or expired."

    def test_ids_are_unique(self, tmp_path):
        ledger = RevertLedger()
        snap = FileSnapshot.capture(tmp_path / "a.txt")
        ids = {ledger.register([snap]) for _ in range(20)}
        assert len(ids) == 20
        assert all(i.startswith("revert_") for i in ids)

    def test_register_nothing(self):
        assert RevertLedger().register([]) == ""


class TestRevertTags:
    def test_tag_round_trip(self):
        text = "Write succeeded: a.txt." + format_revert_tag("revert_1_abc")
        assert text.endswith("\n\n[[revert:revert_1_abc]]")
        assert extract_revert_ids(text) == ["revert_1_abc"]
        assert strip_revert_tags(text) == "Write succeeded: a.txt."

    def test_empty_id_has_no_tag(self):
        assert format_revert_tag("") == ""


# ============================================================
# Channel
# ============================================================

class TestUIChannel:
    def test_queues_until_ready(self):
        seen = []
        channel = UIChannel(transport=seen.append)
        channel.post({"type": "a"})
        channel.post({"type": "b"})
        assert seen == []
        channel.set_ready()
        assert [m["type"] for m in seen] == ["a", "b"]
        channel.post({"type": "c"})
        assert seen[-1]["type"] == "c"

    def test_failed_transport_requeues(self):
        calls = []

        def flaky(message):
            calls.append(message)
            raise RuntimeError("gone")

        channel = UIChannel(transport=flaky, ready=True)
        channel.post({"type": "state"})
        assert not channel.ready
        seen = []
        channel.attach(seen.append)
        channel.set_ready()
        assert seen == [{"type": "state"}]

    def test_request_resolves_once(self):
        async def run():
            seen = []
            channel = UIChannel(transport=seen.append, ready=True)
            task = asyncio.ensure_future(channel.request({"type": "ask"}))
            await asyncio.sleep(0)
            request_id = seen[0]["id"]
            assert channel.resolve(request_id, "yes")
            assert not channel.resolve(request_id, "again")
            return await task

        assert asyncio.run(run()) == "yes"

    def test_resolve_unknown(self):
        assert not UIChannel().resolve("nope", True)


# ============================================================
# Approval gate
# ============================================================

class TestApprovalGate:
    def test_auto_approve_posts_nothing(self):
        seen = []
        gate = ApprovalGate(UIChannel(transport=seen.append, ready=True), auto_approve=True)
        assert asyncio.run(gate.request_approval("Run command?", ["Command: ls"]))
        assert seen == []

    def test_approve_and_reject(self):
        async def run(answer):
            seen = []
            gate = ApprovalGate(UIChannel(transport=seen.append, ready=True))
            task = asyncio.ensure_future(gate.request_approval("Delete file?", ["Target: a"], "Delete"))
            await asyncio.sleep(0)
            request = seen[0]
            assert request["type"] == "approval"
            assert request["approveLabel"] == "Delete"
            assert request["cancelLabel"] == "Cancel"
            assert gate.pending and gate.pending[0]["id"] == request["id"]
            gate.resolve(request["id"], answer)
            result = await task
            assert gate.pending == []
            return result

        assert asyncio.run(run(True)) is True
        assert asyncio.run(run(False)) is False

    def test_cancel_all_rejects_outstanding(self):
        async def run():
            gate = ApprovalGate(UIChannel(transport=lambda m: None, ready=True))
            first = asyncio.ensure_future(gate.request_approval("A"))
            second = asyncio.ensure_future(gate.request_approval("B"))
            await asyncio.sleep(0)
            assert gate.cancel_all() == 2
            return await first, await second

        assert asyncio.run(run()) == (False, False)

    def test_request_waits_for_ready_ui(self):
        async def run():
            seen = []
            channel = UIChannel(transport=seen.append)
            gate = ApprovalGate(channel)
            task = asyncio.ensure_future(gate.request_approval("Apply file edit?"))
            await asyncio.sleep(0)
            assert seen == []
            channel.set_ready()
            gate.resolve(seen[0]["id"], True)
            return await task

        assert asyncio.run(run()) is True
