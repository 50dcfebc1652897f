"""
Tests for the per-VM hot-backup state machine
"""
from pathlib import Path
from unittest.mock import patch

import pytest

from kvm_hotbackup.backup_manager import (
    TRANSITIONS, InvalidTransition, VMBackup, snapshot_name_for,
)
from kvm_hotbackup.exceptions import CompactionError, CopyError
from kvm_hotbackup.models import BackupState, DiskInfo, Severity, VMOutcome
from kvm_hotbackup.restore_scripts import RestoreScriptWriter

from conftest import FakeHypervisor


def make_backup(adapter, transfer, run, vm, shrink=False):
    return VMBackup(adapter, transfer, RestoreScriptWriter(adapter), run,
                    adapter.describe(vm), shrink=shrink)


class TestActivePath:
    """Running VMs go through snapshot, copy and commit"""

    def test_successful_backup_commits_every_disk(self, make_vm, run, transfer):
        vm = make_vm("web", running=True, disk_count=2)
        original_sources = [d.source for d in vm.disks]
        hypervisor = FakeHypervisor([vm])

        result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.OK
        assert result.state == BackupState.DONE
        assert len(hypervisor.calls_for("snapshot")) == 1
        assert hypervisor.calls_for("snapshot")[0][2] == ["vda", "vdb"]
        assert [c[2] for c in hypervisor.calls_for("commit")] == ["vda", "vdb"]
        assert [d.source for d in hypervisor.vms[vm.uuid].disks] == original_sources

    def test_overlays_are_removed_after_merge(self, make_vm, run, transfer, images_dir):
        vm = make_vm("web", running=True, disk_count=2)
        hypervisor = FakeHypervisor([vm])

        make_backup(hypervisor, transfer, run, vm).run()

        name = snapshot_name_for(".kvm-backup", run.run_id)
        assert not list(images_dir.glob(f"*.{name}"))
        assert len(hypervisor.calls_for("delete_artifact")) == 2

    def test_copies_hold_original_disk_contents(self, make_vm, run, transfer):
        vm = make_vm("web", running=True, disk_count=2)
        hypervisor = FakeHypervisor([vm])

        make_backup(hypervisor, transfer, run, vm).run()

        vm_dir = run.vm_directory("web")
        for disk in vm.disks:
            assert (vm_dir / disk.filename).read_bytes() == Path(disk.source).read_bytes()

    def test_copy_failure_still_merges_every_disk(self, make_vm, run, transfer):
        vm = make_vm("db", running=True, disk_count=2)
        hypervisor = FakeHypervisor([vm])
        real_copy = transfer.copy

        def flaky_copy(source, dest):
            if source.endswith("vda.qcow2"):
                raise CopyError("disk full")
            return real_copy(source, dest)

        with patch.object(transfer, "copy", side_effect=flaky_copy):
            result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.DEGRADED
        assert result.disks_failed == ["vda"]
        assert result.disks_copied == ["vdb"]
        assert [c[2] for c in hypervisor.calls_for("commit")] == ["vda", "vdb"]
        assert result.restore_scripts == ["restore-local.sh", "restore-migratable.sh"]

    def test_commit_failure_is_critical_and_stops_processing(self, make_vm, run, transfer):
        vm = make_vm("db", running=True, disk_count=2)
        hypervisor = FakeHypervisor([vm])
        hypervisor.fail_commit.add((vm.uuid, "vda"))

        with patch.object(transfer, "compact") as compact:
            result = make_backup(hypervisor, transfer, run, vm, shrink=True).run()

        assert result.outcome == VMOutcome.CRITICAL
        assert result.state == BackupState.FAILED
        compact.assert_not_called()
        assert not (run.vm_directory("db") / "restore-local.sh").exists()
        assert [c[2] for c in hypervisor.calls_for("commit")] == ["vda"]
        critical = run.entries_at(Severity.CRITICAL)
        assert len(critical) == 1
        assert "CRITICAL" in critical[0].format()
        assert "data corruption may have occurred" in critical[0].message

    def test_snapshot_failure_fails_without_copying(self, make_vm, run, transfer):
        vm = make_vm("db", running=True)
        hypervisor = FakeHypervisor([vm])
        hypervisor.fail_snapshot.add(vm.uuid)

        with patch.object(transfer, "copy") as copy:
            result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.FAILED
        copy.assert_not_called()
        assert hypervisor.calls_for("commit") == []

    def test_cleanup_failure_is_only_a_warning(self, make_vm, run, transfer):
        vm = make_vm("web", running=True)
        hypervisor = FakeHypervisor([vm])
        name = snapshot_name_for(".kvm-backup", run.run_id)
        hypervisor.undeletable.add(f"{vm.disks[0].source}.{name}")

        result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.OK
        assert len(result.warnings) == 1
        assert run.entries_at(Severity.WARNING)

    def test_unexpected_error_with_active_snapshot_is_critical(self, make_vm, run, transfer):
        vm = make_vm("web", running=True)
        hypervisor = FakeHypervisor([vm])

        with patch.object(hypervisor, "commit_snapshot", side_effect=RuntimeError("boom")):
            result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.CRITICAL
        assert "still active" in run.entries_at(Severity.CRITICAL)[0].message

    def test_unexpected_copy_error_still_merges_every_disk(self, make_vm, run, transfer):
        vm = make_vm("web", running=True, disk_count=2)
        original_sources = [d.source for d in vm.disks]
        hypervisor = FakeHypervisor([vm])

        with patch.object(transfer, "copy", side_effect=RuntimeError("reader crashed")):
            result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.FAILED
        assert result.commits == ["vda", "vdb"]
        assert [d.source for d in hypervisor.vms[vm.uuid].disks] == original_sources
        assert run.entries_at(Severity.CRITICAL) == []
        assert not (run.vm_directory("web") / "restore-local.sh").exists()

    def test_unwritable_run_log_does_not_skip_the_merge(self, make_vm, run, transfer):
        vm = make_vm("web", running=True, disk_count=2)
        original_sources = [d.source for d in vm.disks]
        hypervisor = FakeHypervisor([vm])
        real_snapshot = hypervisor.create_disk_snapshot

        def snapshot_then_break_log(*args):
            handle = real_snapshot(*args)
            run.log_path.unlink()
            run.log_path.mkdir()
            return handle

        with patch.object(hypervisor, "create_disk_snapshot", side_effect=snapshot_then_break_log):
            result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.OK
        assert result.commits == ["vda", "vdb"]
        assert [d.source for d in hypervisor.vms[vm.uuid].disks] == original_sources
        assert any("Completing backup" in e.message for e in run.entries)

    def test_disk_without_local_source_is_left_out_of_snapshot(self, make_vm, run, transfer):
        vm = make_vm("web", running=True)
        vm.disks.append(DiskInfo("vdc", "rbd:rbd-pool/web-data", "raw", copyable=False))
        hypervisor = FakeHypervisor([vm])

        result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.DEGRADED
        assert hypervisor.calls_for("snapshot")[0][2] == ["vda"]
        assert result.disks_copied == ["vda"]
        assert result.disks_failed == ["vdc"]
        assert result.commits == ["vda"]
        assert any("rbd:rbd-pool/web-data" in e.message for e in run.entries_at(Severity.ERROR))


class TestInactivePath:
    """Stopped VMs are copied directly"""

    def test_stopped_vm_is_copied_without_snapshot(self, make_vm, run, transfer):
        vm = make_vm("files", disk_count=1)
        hypervisor = FakeHypervisor([vm])

        result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.OK
        assert result.was_running is False
        assert hypervisor.calls_for("snapshot") == []
        assert hypervisor.calls_for("commit") == []
        assert (run.vm_directory("files") / vm.disks[0].filename).exists()

    def test_one_failed_disk_does_not_abort_the_rest(self, make_vm, run, transfer):
        vm = make_vm("files", disk_count=3)
        hypervisor = FakeHypervisor([vm])
        Path(vm.disks[1].source).unlink()

        result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.DEGRADED
        assert result.disks_copied == ["vda", "vdc"]
        assert result.disks_failed == ["vdb"]

    def test_stopped_vm_reports_disk_without_local_source(self, make_vm, run, transfer):
        vm = make_vm("files")
        vm.disks.append(DiskInfo("vdb", "default/files-data.qcow2", "qcow2", copyable=False))
        hypervisor = FakeHypervisor([vm])

        result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.DEGRADED
        assert result.disks_copied == ["vda"]
        assert result.disks_failed == ["vdb"]
        assert not (run.vm_directory("files") / "files-data.qcow2").exists()

    def test_duplicate_base_names_do_not_collide(self, run, transfer, tmp_path):
        first = tmp_path / "a" / "disk.img"
        second = tmp_path / "b" / "disk.img"
        for path in (first, second):
            path.parent.mkdir()
            path.write_bytes(path.parent.name.encode())
        from kvm_hotbackup.models import VMInfo
        vm = VMInfo(uuid="u-1", name="twin", disks=[
            DiskInfo("vda", str(first), "raw"), DiskInfo("vdb", str(second), "raw")])
        hypervisor = FakeHypervisor([vm])

        make_backup(hypervisor, transfer, run, vm).run()

        vm_dir = run.vm_directory("twin")
        assert (vm_dir / "vda-disk.img").read_bytes() == b"a"
        assert (vm_dir / "vdb-disk.img").read_bytes() == b"b"


class TestEntryGuards:
    """Checks that run before any disk is touched"""

    def test_exports_both_configuration_forms(self, make_vm, run, transfer):
        vm = make_vm("web")
        hypervisor = FakeHypervisor([vm])

        make_backup(hypervisor, transfer, run, vm).run()

        vm_dir = run.vm_directory("web")
        assert vm.uuid in (vm_dir / "local.xml").read_text()
        assert vm.uuid not in (vm_dir / "migratable.xml").read_text()

    def test_export_failure_fails_before_snapshot(self, make_vm, run, transfer):
        vm = make_vm("web", running=True)
        hypervisor = FakeHypervisor([vm])
        hypervisor.fail_export.add(vm.uuid)

        result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.FAILED
        assert result.state == BackupState.FAILED
        assert hypervisor.calls_for("snapshot") == []

    def test_vm_vanishing_during_export(self, make_vm, run, transfer):
        vm = make_vm("web")
        hypervisor = FakeHypervisor([vm])
        backup = make_backup(hypervisor, transfer, run, vm)
        hypervisor.vanished.add(vm.uuid)

        result = backup.run()

        assert result.outcome == VMOutcome.VANISHED

    def test_disk_already_on_backup_overlay_aborts(self, make_vm, run, transfer):
        vm = make_vm("web", running=True)
        vm.disks[0].source += ".kvm-backup-20240101.000000"
        Path(vm.disks[0].source).write_bytes(b"overlay")
        hypervisor = FakeHypervisor([vm])

        result = make_backup(hypervisor, transfer, run, vm).run()

        assert result.outcome == VMOutcome.FAILED
        assert hypervisor.calls_for("snapshot") == []
        assert "intermediate backup source" in result.errors[0]


class TestCompactionAndRestore:
    """Optional compaction and restore script generation"""

    def test_compaction_runs_only_for_qcow2(self, make_vm, run, transfer, images_dir):
        vm = make_vm("mixed", disk_count=1)
        raw = images_dir / "mixed-vdb.img"
        raw.write_bytes(b"raw")
        vm.disks.append(DiskInfo("vdb", str(raw), "raw"))
        hypervisor = FakeHypervisor([vm])

        with patch.object(transfer, "compact") as compact:
            result = make_backup(hypervisor, transfer, run, vm, shrink=True).run()

        compact.assert_called_once()
        assert compact.call_args[0][0].endswith("mixed-vda.qcow2")
        assert result.disks_compacted == ["vda"]
        assert result.outcome == VMOutcome.OK

    def test_compaction_failure_keeps_copy_and_degrades(self, make_vm, run, transfer):
        vm = make_vm("web", running=True)
        hypervisor = FakeHypervisor([vm])

        with patch.object(transfer, "compact", side_effect=CompactionError("qemu-img died")):
            result = make_backup(hypervisor, transfer, run, vm, shrink=True).run()

        assert result.outcome == VMOutcome.DEGRADED
        assert result.state == BackupState.DONE
        assert (run.vm_directory("web") / vm.disks[0].filename).exists()
        assert (run.vm_directory("web") / "restore-migratable.sh").exists()

    def test_restore_scripts_list_copied_disks(self, make_vm, run, transfer):
        vm = make_vm("web", running=True, disk_count=2)
        hypervisor = FakeHypervisor([vm])

        make_backup(hypervisor, transfer, run, vm).run()

        script = (run.vm_directory("web") / "restore-local.sh").read_text()
        assert "echo defining local.xml" in script
        for disk in vm.disks:
            assert disk.source in script


class TestTransitionTable:
    """The state machine only moves along declared edges"""

    def test_failed_reachable_from_every_non_terminal_state(self):
        for state, targets in TRANSITIONS.items():
            if state in (BackupState.DONE, BackupState.FAILED):
                assert targets == set()
            else:
                assert BackupState.FAILED in targets

    def test_invalid_transition_raises(self, make_vm, run, transfer):
        vm = make_vm("web")
        backup = make_backup(FakeHypervisor([vm]), transfer, run, vm)

        with pytest.raises(InvalidTransition):
            backup._advance(BackupState.DONE)
