"""Pytest configuration and shared fixtures.

Postfix itself is never invoked: the check, reload, status and postmap
commands are small shell scripts whose behaviour is switched by marker
files in a control directory (see PostfixStub).
"""

from pathlib import Path
from typing import AsyncGenerator, List

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from relayconf.config import CommandConfig, EngineConfig, PostfixConfig, Settings
from relayconf.database import close_db, create_engine, create_session_factory, init_db
from relayconf.services.config_manager import ConfigManager
from relayconf.services.results import Editor

MASTER_SECRET = "test-master-secret-0123456789abcdef-0123"

INITIAL_MAIN_CF = """\
# Postfix main.cf
myhostname = mail.example.com
mydomain = example.com
mynetworks = 127.0.0.0/8, [::1]/128
inet_interfaces = loopback-only
compatibility_level = 3.6
"""

MASTER_CF = """\
smtp      inet  n       -       y       -       -       smtpd
pickup    unix  n       -       y       60      1       pickup
"""


class PostfixStub:
    """
    Controls the shell scripts standing in for the Postfix commands.

    Marker files in the control directory make the next check, reload or
    status call fail; successful reloads and postmap runs are appended to
    log files so tests can count them.
    """

    def __init__(self, control_dir: Path):
        self.control_dir = control_dir
        self.control_dir.mkdir(parents=True, exist_ok=True)

    def commands(self, timeout_seconds: float = 5.0) -> CommandConfig:
        ctl = self.control_dir
        return CommandConfig(
            check=[
                [
                    "sh", "-c",
                    f'echo "postfix check" >> {ctl}/checks; test -f "$1/main.cf" || exit 2; '
                    f'if [ -e {ctl}/postfix_check_fails ]; then cat {ctl}/postfix_check_fails; exit 1; fi',
                    "sh", "{config_dir}",
                ],
                [
                    "sh", "-c",
                    f'echo "postconf" >> {ctl}/checks; test -f "$1/main.cf" || exit 2; '
                    f'if [ -e {ctl}/check_fails ]; then cat {ctl}/check_fails; exit 1; fi',
                    "sh", "{config_dir}",
                ],
            ],
            reload=[
                "sh", "-c",
                f'if [ -e {ctl}/reload_fail_once ]; then rm {ctl}/reload_fail_once; '
                f'echo "postfix/postfix-script: fatal: reload failed"; exit 1; fi; '
                f'if [ -e {ctl}/reload_fails ]; then echo "postfix/postfix-script: fatal: reload failed"; exit 1; fi; '
                f'echo reload >> {ctl}/reloads',
            ],
            status=[
                "sh", "-c",
                f'if [ -e {ctl}/stopped ]; then echo "postfix/postfix-script: the Postfix mail system is not running"; exit 1; fi',
            ],
            postmap=[
                "sh", "-c",
                f'cp "$1" "$1.db" && echo "$1" >> {ctl}/postmaps',
                "sh", "{path}",
            ],
            timeout_seconds=timeout_seconds,
        )

    def reject_check(self, output: str) -> None:
        (self.control_dir / "check_fails").write_text(output + "\n")

    def reject_postfix_check(self, output: str) -> None:
        (self.control_dir / "postfix_check_fails").write_text(output + "\n")

    def fail_next_reload(self) -> None:
        (self.control_dir / "reload_fail_once").touch()

    def fail_reloads(self) -> None:
        (self.control_dir / "reload_fails").touch()

    def stop(self) -> None:
        (self.control_dir / "stopped").touch()

    def start(self) -> None:
        (self.control_dir / "stopped").unlink(missing_ok=True)

    @property
    def reload_count(self) -> int:
        return len(self._lines("reloads"))

    @property
    def checks_run(self) -> List[str]:
        return self._lines("checks")

    @property
    def postmapped(self) -> List[str]:
        return self._lines("postmaps")

    def _lines(self, name: str) -> List[str]:
        path = self.control_dir / name
        return path.read_text().splitlines() if path.exists() else []


# ---------------------------------------------------------------------------
# Filesystem fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def postfix_dir(tmp_path: Path) -> Path:
    """A Postfix configuration directory with a small main.cf and master.cf."""
    config_dir = tmp_path / "etc" / "postfix"
    config_dir.mkdir(parents=True)
    (config_dir / "main.cf").write_text(INITIAL_MAIN_CF)
    (config_dir / "master.cf").write_text(MASTER_CF)
    return config_dir


@pytest.fixture
def main_cf(postfix_dir: Path) -> Path:
    return postfix_dir / "main.cf"


@pytest.fixture
def postfix_stub(tmp_path: Path) -> PostfixStub:
    """Marker-file controlled stand-in for the Postfix commands."""
    return PostfixStub(tmp_path / "control")


@pytest.fixture
def settings(tmp_path: Path, postfix_dir: Path, postfix_stub: PostfixStub) -> Settings:
    """Settings pointing every path into the test's temporary directory."""
    state_dir = tmp_path / "var"
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'relayconf.db'}",
        log_dir=None,
        config_encryption_key=MASTER_SECRET,
        master_secret_file=str(state_dir / ".master_secret"),
        postfix=PostfixConfig(
            config_dir=str(postfix_dir),
            backup_dir=str(state_dir / "backups"),
            lock_file=str(state_dir / "apply.lock"),
        ),
        commands=postfix_stub.commands(),
        # Low iteration count keeps key derivation fast in tests
        engine=EngineConfig(kdf_iterations=1000, lock_timeout_seconds=0.5, min_free_bytes=0),
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def db_engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database with all tables created."""
    engine = create_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker:
    return create_session_factory(db_engine)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def editor() -> Editor:
    return Editor(id=1, username="admin")


@pytest.fixture
def other_editor() -> Editor:
    return Editor(id=2, username="operator")


@pytest.fixture
def manager(settings: Settings, session_factory: async_sessionmaker) -> ConfigManager:
    """ConfigManager wired to the temporary Postfix directory and database."""
    return ConfigManager(settings, session_factory, MASTER_SECRET)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def app(manager: ConfigManager, editor: Editor):
    """Application without lifespan, with a stand-in for the auth middleware."""
    from relayconf.main import create_app

    application = create_app(use_lifespan=False)
    application.state.config_manager = manager

    @application.middleware("http")
    async def authenticate(request, call_next):
        if request.headers.get("X-Test-User") != "anonymous":
            request.state.editor = editor
        return await call_next(request)

    return application


@pytest.fixture
async def api_client(app) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client talking to the app in-process."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
