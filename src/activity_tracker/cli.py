"""Command-line interface for the activity tracker."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from .config import BackendSettings, TrackerSettings, get_log_path
from .models import ROLES, STATUSES, User
from .normalization import compose_memo
from .store import StoreError, open_stores

app = typer.Typer(help="Team activity tracker with derived active-time sessions.")


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _backend(db_path: Optional[Path]) -> BackendSettings:
    try:
        return BackendSettings.from_env(db_path=db_path)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command()
def run(
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        path_type=Path,
        help="Location of the tracker SQLite database.",
    ),
    poll_seconds: float = typer.Option(
        1.0,
        "--interval",
        min=0.1,
        help="Seconds between status checks.",
    ),
    log_file: bool = typer.Option(
        False,
        "--log-file/--no-log-file",
        help="Also write logs to the tracker log file.",
    ),
) -> None:
    """Run the active-time deriver until interrupted."""
    from .deriver import ActiveTimeDeriver
    from .scheduler import TrackerRunner

    if log_file:
        handler = logging.FileHandler(get_log_path(), encoding="utf-8")
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
        logging.getLogger().addHandler(handler)

    session_store, status_store = open_stores(_backend(db_path))
    deriver = ActiveTimeDeriver(
        status_store,
        session_store,
        TrackerSettings.from_intervals(poll_seconds=poll_seconds),
    )
    try:
        TrackerRunner(deriver).run_forever()
    finally:
        session_store.close()
        status_store.close()


@app.command()
def summary(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        path_type=Path,
        help="Location of the tracker SQLite database.",
    ),
) -> None:
    """Print each user's active time for a specific day."""
    from .deriver import ActiveTimeDeriver
    from .queries import ActiveTimeQueries
    from .reporting import SummaryPrinter

    try:
        target = datetime.strptime(date, "%Y-%m-%d").date() if date else datetime.now().date()
    except ValueError as exc:
        raise typer.BadParameter("Expected YYYY-MM-DD", param_hint="--date") from exc

    session_store, status_store = open_stores(_backend(db_path))
    try:
        queries = ActiveTimeQueries(ActiveTimeDeriver(status_store, session_store))
        SummaryPrinter(queries).print_daily_summary(target)
    finally:
        session_store.close()
        status_store.close()


@app.command("set-status")
def set_status(
    user_id: str = typer.Argument(..., help="Id of the user."),
    status: str = typer.Argument(..., help=f"One of: {', '.join(STATUSES)}."),
    memo: Optional[str] = typer.Option(None, "--memo", "-m", help="What the user is working on."),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project tag for the memo."),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the tracker SQLite database."
    ),
) -> None:
    """Record a status change for a user."""
    if status not in STATUSES:
        raise typer.BadParameter(f"Expected one of: {', '.join(STATUSES)}", param_hint="STATUS")

    session_store, status_store = open_stores(_backend(db_path))
    try:
        if not any(user.id == user_id for user in session_store.list_known_users()):
            typer.echo(f"Unknown user {user_id!r}.", err=True)
            raise typer.Exit(code=1)
        snapshot = status_store.update_status(user_id, status, compose_memo(project, memo))
    except StoreError as exc:
        typer.echo(f"Could not update status: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        session_store.close()
        status_store.close()
    typer.echo(f"{user_id}: {snapshot.status}" + (f" ({snapshot.memo})" if snapshot.memo else ""))


@app.command("add-user")
def add_user(
    user_id: str = typer.Argument(..., help="Unique id of the user."),
    name: str = typer.Argument(..., help="Display name."),
    email: Optional[str] = typer.Option(None, "--email", help="Contact address."),
    role: str = typer.Option("member", "--role", help=f"One of: {', '.join(ROLES)}."),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the tracker SQLite database."
    ),
) -> None:
    """Add a user to the directory, or update an existing one."""
    if role not in ROLES:
        raise typer.BadParameter(f"Expected one of: {', '.join(ROLES)}", param_hint="--role")

    session_store, status_store = open_stores(_backend(db_path))
    try:
        session_store.add_user(User(id=user_id, name=name, email=email, role=role))
    finally:
        session_store.close()
        status_store.close()
    typer.echo(f"Saved user {user_id} ({name}).")


@app.command()
def users(
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the tracker SQLite database."
    ),
) -> None:
    """List known users with their current status."""
    session_store, status_store = open_stores(_backend(db_path))
    try:
        known = session_store.list_known_users()
        if not known:
            typer.echo("No users yet. Add one with `activity-tracker add-user`.")
            return
        for user in known:
            snapshot = status_store.get_snapshot(user.id)
            state = snapshot.status if snapshot else "not-available"
            memo = f"  {snapshot.memo}" if snapshot and snapshot.memo else ""
            typer.echo(f"{user.id:<12} {user.name:<24} {state:<18}{memo}")
    finally:
        session_store.close()
        status_store.close()


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the API."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the tracker SQLite database."
    ),
    poll_seconds: float = typer.Option(
        1.0,
        "--interval",
        min=0.1,
        help="Seconds between status checks.",
    ),
    refresh_seconds: Optional[float] = typer.Option(
        None,
        "--refresh-interval",
        min=0.1,
        help="Seconds between live duration refreshes (defaults to 0.5s or the poll interval).",
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser/--no-open-browser",
        help="Open the interactive API docs in your default browser.",
    ),
) -> None:
    """Serve the HTTP API with the deriver running in the background."""
    from .server_runner import run_dashboard

    settings = TrackerSettings.from_intervals(
        poll_seconds=poll_seconds,
        refresh_seconds=refresh_seconds,
    )
    run_dashboard(
        host=host,
        port=port,
        backend=_backend(db_path),
        settings=settings,
        open_browser=open_browser,
    )
