from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Sequence

from ..common.drive import DriveAppDataClient
from ..common.errors import (
    AuthenticationError,
    BackupError,
    ConfigurationError,
    NotAuthenticatedError,
    RestoreError,
    SessionExpiredError,
    ValidationError,
)
from ..common.oauth import LoopbackConsentFlow, RemoteAuthSession
from ..state.host_state import JsonFileHostState
from ..state.session_store import InMemorySessionStore, RuntimeDirSessionStore, SessionStore
from .orchestrator import BackupOrchestrator

logger = logging.getLogger(__name__)


# Environment configuration
ENV_CLIENT_ID = "FINMASTER_GDRIVE_CLIENT_ID"
ENV_CLIENT_SECRET = "FINMASTER_GDRIVE_CLIENT_SECRET"  # optional
ENV_STATE_FILE = "FINMASTER_STATE_FILE"  # optional; defaults to "finmaster_state.json"
ENV_HTTP_TIMEOUT = "FINMASTER_HTTP_TIMEOUT"
ENV_HTTP_RETRIES = "FINMASTER_HTTP_RETRIES"
ENV_SESSION_STORE = "FINMASTER_SESSION_STORE"  # "runtime" (default) or "memory"
ENV_LOG_LEVEL = "FINMASTER_LOG_LEVEL"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_AUTH_REQUIRED = 3


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _env_number(name: str, default: str, cast, minimum=None):
    raw = _getenv(name, default)
    try:
        value = cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from exc
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r} (minimum {minimum})")
    return value


def _session_store() -> SessionStore:
    kind = (_getenv(ENV_SESSION_STORE, "runtime") or "runtime").lower()
    if kind == "memory":
        return InMemorySessionStore()
    if kind == "runtime":
        return RuntimeDirSessionStore()
    raise ConfigurationError(f"Invalid value for {ENV_SESSION_STORE}: {kind!r}")


def build_orchestrator() -> BackupOrchestrator:
    """Wire the subsystem from environment configuration."""
    timeout = _env_number(ENV_HTTP_TIMEOUT, "30", float, minimum=0.1)
    retries = _env_number(ENV_HTTP_RETRIES, "3", int, minimum=1)
    flow = LoopbackConsentFlow(client_secret=_getenv(ENV_CLIENT_SECRET), http_timeout=timeout)
    session = RemoteAuthSession(store=_session_store(), consent_flow=flow, timeout=timeout)

    client_id = _getenv(ENV_CLIENT_ID)
    if client_id:
        session.configure(client_id)

    storage = DriveAppDataClient(session, timeout=timeout, max_attempts=retries)
    host = JsonFileHostState(_getenv(ENV_STATE_FILE, "finmaster_state.json") or "finmaster_state.json")
    return BackupOrchestrator(session=session, storage=storage, host_state=host)


def _read_password(args: argparse.Namespace, *, confirm: bool) -> str:
    if args.password_stdin:
        return sys.stdin.readline().rstrip("\r\n")
    password = getpass.getpass("Backup password: ")
    if confirm and password != getpass.getpass("Repeat password: "):
        raise ValidationError("Passwords do not match.")
    return password


def _format_expiry(expires_at_ms: Optional[int]) -> str:
    if expires_at_ms is None:
        return "-"
    return datetime.fromtimestamp(expires_at_ms / 1000, UTC).isoformat(timespec="seconds")


def _descriptor_row(d: Any) -> Dict[str, Any]:
    return {
        "id": d.id,
        "name": d.name,
        "createdTime": d.created_time.isoformat() if d.created_time else None,
        "size": d.size,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="finmaster-backup",
        description="Password-encrypted FinMaster backups in Google Drive app data",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show configuration and sign-in state")
    sub.add_parser("sign-in", help="Authorize access to the app's private Drive folder")
    sub.add_parser("sign-out", help="Revoke and forget the current session")

    p_backup = sub.add_parser("backup", help="Encrypt and upload the current state")
    p_backup.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")

    p_list = sub.add_parser("list", help="List stored backups, newest first")
    p_list.add_argument("--json", action="store_true")

    p_restore = sub.add_parser("restore", help="Download, decrypt and import a backup")
    p_restore.add_argument("file_id")
    p_restore.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")

    p_delete = sub.add_parser("delete", help="Delete a stored backup")
    p_delete.add_argument("file_id")
    return parser


def run(argv: Optional[Sequence[str]] = None, orchestrator: Optional[BackupOrchestrator] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        mgr = orchestrator or build_orchestrator()
        return _dispatch(args, mgr)
    except (NotAuthenticatedError, SessionExpiredError) as exc:
        print(f"{exc} Run 'finmaster-backup sign-in'.", file=sys.stderr)
        return EXIT_AUTH_REQUIRED
    except (ConfigurationError, ValidationError) as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_USAGE
    except AuthenticationError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_AUTH_REQUIRED
    except BackupError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_FAILURE


def _dispatch(args: argparse.Namespace, mgr: BackupOrchestrator) -> int:
    if args.command == "status":
        print(f"configured: {'yes' if mgr.is_configured else 'no'}")
        print(f"signed in:  {'yes' if mgr.is_authenticated() else 'no'}")
        print(f"expires:    {_format_expiry(mgr.session_expires_at_ms)}")
        return EXIT_OK

    if args.command == "sign-in":
        if not mgr.is_configured:
            raise ConfigurationError(f"Missing required configuration: {ENV_CLIENT_ID}")
        auth = mgr.sign_in()
        print(f"Signed in. Session valid until {_format_expiry(auth.expires_at_ms)}.")
        return EXIT_OK

    if args.command == "sign-out":
        mgr.sign_out()
        print("Signed out.")
        return EXIT_OK

    if args.command == "backup":
        if not mgr.is_authenticated():
            raise NotAuthenticatedError("Not signed in to the storage provider.")
        password = _read_password(args, confirm=not args.password_stdin)
        descriptor = mgr.backup_now(password)
        print(f"Backup uploaded: {descriptor.name} ({descriptor.id})")
        return EXIT_OK

    if args.command == "list":
        if not mgr.is_authenticated():
            raise NotAuthenticatedError("Not signed in to the storage provider.")
        rows: List[Dict[str, Any]] = [_descriptor_row(d) for d in mgr.list_backups()]
        if args.json:
            print(json.dumps(rows, indent=2))
        elif not rows:
            print("No backups found.")
        else:
            for row in rows:
                print(f"{row['id']}  {row['createdTime'] or '-'}  {row['size'] or '-':>8}  {row['name']}")
        return EXIT_OK

    if args.command == "restore":
        if not mgr.is_authenticated():
            raise NotAuthenticatedError("Not signed in to the storage provider.")
        password = _read_password(args, confirm=False)
        try:
            mgr.restore_backup(args.file_id, password)
        except RestoreError:
            # A 401 during download clears the session
            if not mgr.is_authenticated():
                raise SessionExpiredError("Session expired. Please sign in again.") from None
            raise
        print("Restore complete. Restart the application to load the restored data.")
        return EXIT_OK

    if args.command == "delete":
        mgr.delete_backup(args.file_id)
        print(f"Deleted {args.file_id}.")
        return EXIT_OK

    raise ValidationError(f"Unknown command: {args.command}")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, (_getenv(ENV_LOG_LEVEL, "WARNING") or "WARNING").upper(), logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
    )
    sys.exit(run())


if __name__ == "__main__":
    main()
