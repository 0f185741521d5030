"""Tests for the CSV device registry."""

import logging
import os

import pytest

from routeros_upgrade.exceptions import (
    DeviceNotFoundError, InvalidFilterError, NoMatchingDevicesError, RegistryFormatError
)
from routeros_upgrade.models import DeviceRecord
from routeros_upgrade.registry import (
    RegistryStore, render_registry, render_row, resolve_registry_path
)
from tests.helpers import REGISTRY_HEADER, registry_row


@pytest.fixture
def fleet_registry(tmp_path):
    """Registry with three boards, written with mixed quoting."""
    path = tmp_path / "fleet.csv"
    path.write_text(
        REGISTRY_HEADER
        + registry_row("core-01", "10.0.0.1", board="CCR2004-1G-12S+2XS")
        + 'edge-01,10.0.0.2,AA:BB:CC:DD:EE:02,ether2,MikroTik,RB5009UG+S+,7.16.2,\n'
        + registry_row("edge-02", "10.0.0.3", board="RB5009UG+S+", status="FAILED:PingFail 2025-01-01 00:00:00 +0000"),
        newline=""
    )
    return path


class TestRegistryRead:
    """Test reading the registry."""

    def test_read_all_in_file_order(self, fleet_registry):
        records = RegistryStore(fleet_registry).read_all()

        assert [r.identity for r in records] == ["core-01", "edge-01", "edge-02"]
        assert records[1].board_name == "RB5009UG+S+"
        assert records[1].status == ""
        assert records[2].status.startswith("FAILED:PingFail")

    def test_get_by_identity(self, fleet_registry):
        record = RegistryStore(fleet_registry).get("edge-01")
        assert record.ip_addr == "10.0.0.2"
        assert record.host == "10.0.0.2"

    def test_get_unknown_identity(self, fleet_registry):
        with pytest.raises(DeviceNotFoundError):
            RegistryStore(fleet_registry).get("nope")

    def test_quoted_field_with_comma_and_newline(self, tmp_path):
        """A quoted status may contain commas, quotes and line breaks."""
        path = tmp_path / "r.csv"
        path.write_text(
            REGISTRY_HEADER + registry_row("r1", "10.0.0.1", status='line one,\nsaid "hi"'),
            newline=""
        )

        record = RegistryStore(path).get("r1")

        assert record.status == 'line one,\nsaid "hi"'

    def test_missing_file(self, tmp_path):
        with pytest.raises(RegistryFormatError, match="does not exist"):
            RegistryStore(tmp_path / "missing.csv").read_all()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")
        with pytest.raises(RegistryFormatError, match="empty"):
            RegistryStore(path).read_all()

    def test_header_missing_column(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text('"identity","ip_addr"\n"r1","10.0.0.1"\n')
        with pytest.raises(RegistryFormatError, match="board_name"):
            RegistryStore(path).read_all()

    def test_row_with_wrong_field_count(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text(REGISTRY_HEADER + '"r1","10.0.0.1"\n')
        with pytest.raises(RegistryFormatError, match="record 2"):
            RegistryStore(path).read_all()

    def test_blank_lines_skipped(self, tmp_path):
        path = tmp_path / "r.csv"
        path.write_text(REGISTRY_HEADER + "\n" + registry_row("r1", "10.0.0.1") + "\n", newline="")
        assert [r.identity for r in RegistryStore(path).read_all()] == ["r1"]


class TestRegistryUpdate:
    """Test single-row updates."""

    def test_only_target_row_changes(self, fleet_registry):
        """Every other row keeps its exact bytes and position."""
        before = fleet_registry.read_bytes().splitlines(keepends=True)

        RegistryStore(fleet_registry).set_status("core-01", "SUCCESS: Updated to 7.18.2 ts", version="7.18.2")

        after = fleet_registry.read_bytes().splitlines(keepends=True)
        assert len(after) == len(before)
        assert after[0] == before[0]
        assert after[2] == before[2]
        assert after[3] == before[3]
        assert after[1] != before[1]

        record = RegistryStore(fleet_registry).get("core-01")
        assert record.status == "SUCCESS: Updated to 7.18.2 ts"
        assert record.version == "7.18.2"
        assert record.board_name == "CCR2004-1G-12S+2XS"

    def test_unquoted_row_updated_in_place(self, fleet_registry):
        RegistryStore(fleet_registry).set_status("edge-01", "PENDING: Upgrading to 7.18.2 ts")

        lines = fleet_registry.read_text().splitlines()
        assert lines[2] == (
            '"edge-01","10.0.0.2","AA:BB:CC:DD:EE:02","ether2","MikroTik",'
            '"RB5009UG+S+","7.16.2","PENDING: Upgrading to 7.18.2 ts"'
        )

    def test_crlf_line_endings_preserved(self, tmp_path):
        path = tmp_path / "crlf.csv"
        path.write_bytes(
            (REGISTRY_HEADER + registry_row("r1", "10.0.0.1") + registry_row("r2", "10.0.0.2"))
            .replace("\n", "\r\n").encode()
        )

        RegistryStore(path).set_status("r1", "done")

        data = path.read_bytes()
        assert data.count(b"\r\n") == 3
        assert b'"done"\r\n' in data

    def test_multiline_row_updated(self, tmp_path):
        path = tmp_path / "r.csv"
        path.write_text(
            REGISTRY_HEADER
            + registry_row("r1", "10.0.0.1", status="first\nsecond")
            + registry_row("r2", "10.0.0.2"),
            newline=""
        )

        RegistryStore(path).set_status("r1", "replaced")

        records = RegistryStore(path).read_all()
        assert [r.status for r in records] == ["replaced", ""]

    def test_duplicate_identity_first_wins(self, tmp_path, caplog):
        path = tmp_path / "dup.csv"
        path.write_text(
            REGISTRY_HEADER
            + registry_row("r1", "10.0.0.1")
            + registry_row("r1", "10.0.0.9"),
            newline=""
        )

        with caplog.at_level(logging.WARNING, logger="routeros_upgrade.registry"):
            RegistryStore(path).set_status("r1", "updated")

        records = RegistryStore(path).read_all()
        assert records[0].status == "updated"
        assert records[1].status == ""
        assert "Duplicate identity 'r1'" in caplog.text

    def test_mutator_may_return_replacement(self, fleet_registry):
        store = RegistryStore(fleet_registry)

        def mutate(record):
            return DeviceRecord(**{**record.to_dict(), "version": "7.18.2"})

        updated = store.update_by_identity("edge-02", mutate)

        assert updated.version == "7.18.2"
        assert store.get("edge-02").version == "7.18.2"

    def test_identity_change_rejected(self, fleet_registry):
        before = fleet_registry.read_bytes()

        def rename(record):
            record.identity = "other"

        with pytest.raises(ValueError):
            RegistryStore(fleet_registry).update_by_identity("core-01", rename)
        assert fleet_registry.read_bytes() == before

    def test_unchanged_record_not_rewritten(self, fleet_registry):
        os.utime(fleet_registry, ns=(0, 0))

        RegistryStore(fleet_registry).update_by_identity("core-01", lambda record: None)

        assert fleet_registry.stat().st_mtime_ns == 0

    def test_update_unknown_identity(self, fleet_registry):
        with pytest.raises(DeviceNotFoundError):
            RegistryStore(fleet_registry).set_status("ghost", "x")

    def test_no_temp_files_left(self, fleet_registry):
        RegistryStore(fleet_registry).set_status("core-01", "x")
        assert sorted(p.name for p in fleet_registry.parent.iterdir()) == ["fleet.csv"]


class TestRegistryFilter:
    """Test host selection by board name or identity."""

    def test_matches_board_name(self, fleet_registry):
        records = RegistryStore(fleet_registry).filter("rb5009")
        assert [r.identity for r in records] == ["edge-01", "edge-02"]

    def test_matches_identity(self, fleet_registry):
        records = RegistryStore(fleet_registry).filter("^core")
        assert [r.identity for r in records] == ["core-01"]

    def test_matches_either_field(self, fleet_registry):
        records = RegistryStore(fleet_registry).filter("CCR|edge-02")
        assert [r.identity for r in records] == ["core-01", "edge-02"]

    def test_duplicates_collapse(self, tmp_path):
        path = tmp_path / "dup.csv"
        path.write_text(
            REGISTRY_HEADER + registry_row("r1", "10.0.0.1") + registry_row("r1", "10.0.0.9"),
            newline=""
        )
        records = RegistryStore(path).filter("r1")
        assert [r.ip_addr for r in records] == ["10.0.0.1"]

    def test_invalid_pattern(self, fleet_registry):
        with pytest.raises(InvalidFilterError):
            RegistryStore(fleet_registry).filter("([")

    def test_no_match(self, fleet_registry):
        with pytest.raises(NoMatchingDevicesError) as exc_info:
            RegistryStore(fleet_registry).filter("hex-s")
        assert exc_info.value.pattern == "hex-s"


class TestRegistryWrite:
    """Test creating a registry from discovered devices."""

    def test_render_quotes_every_field(self):
        assert render_row(['a', 'b "c"', '']) == '"a","b ""c""",""\n'

    def test_create_then_read(self, tmp_path):
        records = [
            DeviceRecord(identity="r1", ip_addr="10.0.0.1", board_name="hAP ax2", version="7.16.2"),
            DeviceRecord(identity="r2", ip_addr="2001:db8::2", board_name="RB5009UG+S+", version="7.15"),
        ]
        path = tmp_path / "new.csv"

        store = RegistryStore.create(path, records)

        assert path.read_text().splitlines()[0] == REGISTRY_HEADER.strip()
        assert store.read_all() == records

    def test_render_registry_header_only(self):
        assert render_registry([]) == REGISTRY_HEADER


class TestResolveRegistryPath:
    """Test registry file location rules."""

    def test_explicit_path(self, fleet_registry):
        assert resolve_registry_path(str(fleet_registry)) == fleet_registry

    def test_explicit_path_missing_directory(self, tmp_path):
        with pytest.raises(RegistryFormatError, match="directory"):
            resolve_registry_path(str(tmp_path / "nope" / "r.csv"), for_write=True)

    def test_explicit_path_missing_file(self, tmp_path):
        with pytest.raises(RegistryFormatError, match="does not exist"):
            resolve_registry_path(str(tmp_path / "r.csv"))

    def test_bare_name_in_current_directory(self, fleet_registry, monkeypatch):
        monkeypatch.chdir(fleet_registry.parent)
        assert resolve_registry_path("fleet.csv") == fleet_registry

    def test_bare_name_falls_back_to_home(self, tmp_path, monkeypatch, caplog):
        home = tmp_path / "home"
        work = tmp_path / "work"
        home.mkdir()
        work.mkdir()
        (home / "r.csv").write_text(REGISTRY_HEADER)
        monkeypatch.setenv("HOME", str(home))
        monkeypatch.chdir(work)

        with caplog.at_level(logging.WARNING, logger="routeros_upgrade.registry"):
            path = resolve_registry_path("r.csv")

        assert path == home / "r.csv"
        assert "trying" in caplog.text

    def test_bare_name_missing_everywhere(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.chdir(tmp_path)
        with pytest.raises(RegistryFormatError):
            resolve_registry_path("absent.csv")

    def test_bare_name_for_write_uses_current_directory(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert resolve_registry_path("new.csv", for_write=True) == tmp_path / "new.csv"
