"""Tests for main.cf parsing/rendering and the filesystem side of an apply."""

import os
import stat
from pathlib import Path

import pytest

from relayconf.config import PostfixConfig
from relayconf.constants import PENDING_DIR_PREFIX
from relayconf.exceptions import WriteFailure
from relayconf.services.config_files import ConfigFiles, parse_main_cf, render_main_cf


@pytest.fixture
def files(settings) -> ConfigFiles:
    return ConfigFiles(settings.postfix, min_free_bytes=0)


class TestParseMainCf:
    """Tests for the main.cf reader."""

    def test_parses_assignments_and_skips_comments(self) -> None:
        text = "# comment\n\nmyhostname = mail.example.com\nmydomain=example.com\n"
        assert parse_main_cf(text) == {"myhostname": "mail.example.com", "mydomain": "example.com"}

    def test_continuation_lines_join_list_values(self) -> None:
        text = "mynetworks = 127.0.0.0/8,\n    10.0.0.0/8,\n\t192.168.0.0/16\n"
        assert parse_main_cf(text)["mynetworks"] == "127.0.0.0/8\n10.0.0.0/8\n192.168.0.0/16"

    def test_empty_value(self) -> None:
        assert parse_main_cf("relayhost =\n") == {"relayhost": ""}

    def test_later_assignment_wins(self) -> None:
        assert parse_main_cf("relayhost = a.example.com\nrelayhost = b.example.com\n") == {
            "relayhost": "b.example.com",
        }

    def test_unmanaged_parameters_kept_verbatim(self) -> None:
        params = parse_main_cf("alias_maps = hash:/etc/aliases, hash:/etc/aliases.extra\n")
        assert params["alias_maps"] == "hash:/etc/aliases, hash:/etc/aliases.extra"

    def test_garbage_lines_ignored(self) -> None:
        assert parse_main_cf("this is not a parameter\nmyhostname = a.example.com\n") == {
            "myhostname": "a.example.com",
        }


class TestRenderMainCf:
    """Tests for the main.cf writer."""

    def test_sections_in_category_order(self) -> None:
        content = render_main_cf({
            "smtpd_relay_restrictions": "permit_mynetworks\nreject_unauth_destination",
            "relayhost": "[smtp.example.com]:587",
            "myhostname": "mail.example.com",
        })

        general = content.index("# General")
        relay = content.index("# Relay")
        restrictions = content.index("# Restrictions")
        assert general < relay < restrictions
        assert "relayhost = [smtp.example.com]:587\n" in content
        assert "smtpd_relay_restrictions = permit_mynetworks,\n    reject_unauth_destination\n" in content

    def test_unmanaged_keys_rendered_last_sorted(self) -> None:
        content = render_main_cf({"myhostname": "mail.example.com", "z_param": "1", "a_param": "2"})
        other = content.index("# Other")
        assert content.index("myhostname") < other < content.index("a_param") < content.index("z_param")

    def test_none_values_omitted_empty_string_kept(self) -> None:
        content = render_main_cf({"relayhost": "", "mydomain": None})
        assert "relayhost =\n" in content
        assert "mydomain" not in content

    def test_output_is_deterministic(self) -> None:
        params = {"myhostname": "mail.example.com", "mynetworks": "127.0.0.0/8\n10.0.0.0/8", "x": "y"}
        reordered = dict(reversed(list(params.items())))
        assert render_main_cf(params) == render_main_cf(reordered)

    def test_render_then_parse_preserves_values(self) -> None:
        params = {
            "myhostname": "mail.example.com",
            "mynetworks": "127.0.0.0/8\n[::1]/128",
            "smtpd_recipient_restrictions": "permit_mynetworks\nreject_rbl_client zen.spamhaus.org",
            "relayhost": "",
            "compatibility_level": "3.6",
        }
        assert parse_main_cf(render_main_cf(params)) == params


class TestConfigFiles:
    """Tests for pending directories, backups, promotion and restore."""

    def test_read_live(self, files: ConfigFiles) -> None:
        live = files.read_live()
        assert live["myhostname"] == "mail.example.com"
        assert live["mynetworks"] == "127.0.0.0/8\n[::1]/128"

    def test_read_live_missing_file(self, tmp_path: Path) -> None:
        files = ConfigFiles(PostfixConfig(config_dir=str(tmp_path)))
        assert files.read_live() == {}

    def test_create_pending_copies_master_cf(self, files: ConfigFiles, postfix_dir: Path) -> None:
        pending = files.create_pending("myhostname = new.example.com\n")
        try:
            assert pending.parent == postfix_dir
            assert pending.name.startswith(PENDING_DIR_PREFIX)
            assert (pending / "main.cf").read_text() == "myhostname = new.example.com\n"
            assert (pending / "master.cf").read_text() == (postfix_dir / "master.cf").read_text()
        finally:
            files.remove_pending(pending)
        assert not pending.exists()

    def test_pending_directories_are_unique(self, files: ConfigFiles) -> None:
        first = files.create_pending("a = 1\n")
        second = files.create_pending("a = 2\n")
        assert first != second
        files.remove_pending(first)
        files.remove_pending(second)

    def test_insufficient_space_is_write_failure(self, settings) -> None:
        files = ConfigFiles(settings.postfix, min_free_bytes=2 ** 62)
        with pytest.raises(WriteFailure, match="bytes free"):
            files.create_pending("a = 1\n")

    def test_promote_replaces_live_file(self, files: ConfigFiles, main_cf: Path) -> None:
        pending = files.create_pending("myhostname = new.example.com\n")
        files.promote(pending)
        files.remove_pending(pending)
        assert main_cf.read_text() == "myhostname = new.example.com\n"

    def test_failed_promote_leaves_live_file(self, files: ConfigFiles, main_cf: Path) -> None:
        original = main_cf.read_bytes()
        pending = files.create_pending("myhostname = new.example.com\n")
        (pending / "main.cf").unlink()

        with pytest.raises(WriteFailure):
            files.promote(pending)
        files.remove_pending(pending)
        assert main_cf.read_bytes() == original

    def test_backup_and_restore(self, files: ConfigFiles, main_cf: Path) -> None:
        original = main_cf.read_bytes()
        backup = files.backup(main_cf)
        main_cf.write_text("broken\n")

        files.restore(backup)

        assert backup.backup_path.parent == files.backup_dir
        assert main_cf.read_bytes() == original

    def test_restore_removes_file_that_did_not_exist(self, files: ConfigFiles) -> None:
        backup = files.backup(files.credentials_file)
        assert backup.backup_path is None
        files.credentials_file.write_text("new\n")

        files.restore(backup)

        assert not files.credentials_file.exists()

    def test_prune_backups_keeps_newest(self, files: ConfigFiles) -> None:
        files.backup_dir.mkdir(parents=True)
        names = [f"main.cf.20260101-00000{i}-000000" for i in range(5)]
        for name in names:
            (files.backup_dir / name).write_text(name)

        removed = files.prune_backups(keep=2)

        assert removed == 3
        assert sorted(p.name for p in files.backup_dir.iterdir()) == names[3:]

    def test_write_credentials_mode_and_content(self, files: ConfigFiles) -> None:
        first = bytearray(b"user:secret")
        second = bytearray(b"other:pw")
        files.write_credentials([("[a.example.com]:587", first), ("b.example.com", second)])

        mode = stat.S_IMODE(os.stat(files.credentials_file).st_mode)
        assert mode == 0o600
        assert files.credentials_file.read_text() == (
            "[a.example.com]:587 user:secret\nb.example.com other:pw\n"
        )
        # Plaintext buffers are zeroed once written
        assert first == bytearray(len(first))
        assert second == bytearray(len(second))

    def test_credentials_map_file_suffix(self, files: ConfigFiles) -> None:
        assert files.credentials_map_file.name == "sasl_passwd.db"

    def test_write_and_read_table(self, files: ConfigFiles, postfix_dir: Path) -> None:
        entries = "example.com smtp:[relay.example.com]\n.example.com smtp:[relay.example.com]"
        path = files.write_table("transport_entries", entries)

        assert path == postfix_dir / "transport"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o644
        assert path.read_text().endswith(
            "example.com\tsmtp:[relay.example.com]\n.example.com\tsmtp:[relay.example.com]\n"
        )
        assert files.read_table("transport_entries") == entries
        assert files.read_tables() == {"transport_entries": entries}

    def test_empty_table_reads_as_unset(self, files: ConfigFiles) -> None:
        assert files.read_table("sender_relay_entries") is None
        files.write_table("sender_relay_entries", None)
        assert files.table_file("sender_relay_entries").exists()
        assert files.read_table("sender_relay_entries") is None

    def test_table_reference_uses_map_type(self, files: ConfigFiles, postfix_dir: Path) -> None:
        assert files.table_reference("transport_entries") == f"hash:{postfix_dir / 'transport'}"
        assert files.table_map_file("sender_relay_entries") == postfix_dir / "sender_relayhost.db"

    def test_prune_backups_covers_tables(self, files: ConfigFiles) -> None:
        files.backup_dir.mkdir(parents=True)
        for prefix in ("transport", "transport.db"):
            for i in range(3):
                (files.backup_dir / f"{prefix}.20260101-00000{i}-000000").write_text(prefix)

        removed = files.prune_backups(keep=1)

        assert removed == 4
        assert sorted(p.name for p in files.backup_dir.iterdir()) == [
            "transport.20260101-000002-000000",
            "transport.db.20260101-000002-000000",
        ]
