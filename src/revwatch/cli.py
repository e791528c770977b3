"""Command line entry point for the revwatch watchdog."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from . import __version__
from .build import BuildRunner
from .config import WatchSettings, load_settings, normalize_log_level, prepare_install_dir
from .git import GitNotFoundError, GitRunner
from .loop import UpdateLoop
from .repository import RepositoryError, RepositoryHandle, RepositorySync
from .supervisor import ProcessSupervisor

EXIT_ENV = 1
EXIT_GIT = 2
EXIT_CONFIG = 3

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the watchdog."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_repository(settings: WatchSettings, runner: GitRunner | None = None) -> RepositorySync:
    runner = runner or GitRunner(
        timeout=settings.git_timeout,
        username=settings.git_username,
        password=settings.git_password,
    )
    handle = RepositoryHandle(
        local_path=settings.install_dir,
        remote_url=settings.repo_url,
        remote_name=settings.remote_name,
    )
    return RepositorySync(handle, runner)


def create_loop(settings: WatchSettings, runner: GitRunner | None = None) -> UpdateLoop:
    """Wire the repository, build runner and supervisor described by ``settings``."""

    return UpdateLoop(
        create_repository(settings, runner),
        BuildRunner(settings.build_args, manifest=settings.build_manifest),
        ProcessSupervisor(grace_period=settings.stop_grace_period),
        launch_command=settings.launch_args,
        interval=settings.poll_interval,
    )


def _install_signal_handlers(watch: UpdateLoop) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, watch.request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows: Ctrl+C arrives as KeyboardInterrupt and cancels the loop task
            pass


async def _serve(watch: UpdateLoop) -> int:
    _install_signal_handlers(watch)
    try:
        await watch.bootstrap()
    except RepositoryError as exc:
        logger.error("ERROR code=%s cannot prepare checkout: %s", EXIT_GIT, exc)
        return EXIT_GIT
    await watch.run()
    return 0


def cmd_run(args: argparse.Namespace, settings: WatchSettings) -> int:
    watch = create_loop(settings)
    logger.info(
        "Starting revwatch %s (repo=%s, path=%s)",
        __version__,
        settings.repo_url,
        settings.install_dir,
    )
    try:
        return asyncio.run(_serve(watch))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


async def _status(repository: RepositorySync) -> dict:
    await repository.ensure_present()
    decision = await repository.check_for_update()
    branch: str | None
    try:
        branch = await repository.current_branch()
    except RepositoryError:
        branch = None
    commit = decision.commit or await repository.latest_remote_commit()
    return {
        "path": str(repository.local_path),
        "branch": branch,
        "status": decision.status.value,
        "local_revision": decision.local_revision,
        "remote_revision": decision.remote_revision,
        "error": decision.error,
        "latest_remote_commit": None
        if commit is None
        else {
            "revision": commit.revision,
            "author": commit.author,
            "committed_at": commit.committed_at.isoformat(),
            "message": commit.message,
        },
    }


def cmd_status(args: argparse.Namespace, settings: WatchSettings) -> int:
    try:
        payload = asyncio.run(_status(create_repository(settings)))
    except RepositoryError as exc:
        print(f"ERROR code={EXIT_GIT} {exc}")
        return EXIT_GIT
    print(json.dumps(payload, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="revwatch",
        description="Rebuild and restart an application whenever its repository changes",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to a YAML settings file")
    parser.add_argument("--log-level", default=None, help="Override REVWATCH_LOG_LEVEL")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Build, launch and keep the application up to date (default)")
    p_run.set_defaults(func=cmd_run)

    p_status = sub.add_parser("status", help="Fetch and print the checkout's update status as JSON")
    p_status.set_defaults(func=cmd_status)

    parser.set_defaults(func=cmd_run)
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
        if args.log_level:
            settings = settings.model_copy(
                update={"log_level": normalize_log_level(args.log_level)}
            )
    except (ValidationError, ValueError) as exc:
        print(f"ERROR code={EXIT_CONFIG} config validation failed: {exc}")
        sys.exit(EXIT_CONFIG)

    configure_logging(settings.log_level)
    try:
        prepare_install_dir(settings)
        code = args.func(args, settings)
    except GitNotFoundError as exc:
        print(f"ERROR code={EXIT_ENV} {exc}")
        sys.exit(EXIT_ENV)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
