from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from pushdeploy.config import DEFAULT_CONFIG_NAME, DeployConfig, ServiceSettings
from pushdeploy.core.backends import BackendRegistry
from pushdeploy.core.command_runner import CommandRunner
from pushdeploy.core.deploy_pipeline import DeployPipeline
from pushdeploy.core.errors import CommandError, ConfigError, DeployError
from pushdeploy.core.lock_manager import LockManager
from pushdeploy.core.runtime_installer import RuntimeInstaller
from pushdeploy.core.service_installer import ServiceInstaller
from pushdeploy.db.store import SQLiteStore
from pushdeploy.logging_setup import configure_logging
from pushdeploy.models.backend import BackendVariant
from pushdeploy.models.deployment import DeployState

logger = logging.getLogger("pushdeploy.cli")

_EXIT_CODES = {
    DeployState.SUCCEEDED: 0,
    DeployState.ROLLED_BACK: 1,
    DeployState.FAILED: 2,
    DeployState.ABORTED: 3,
}

_BACKEND_TOOLS: dict[BackendVariant, tuple[str, ...]] = {
    BackendVariant.INTERPRETED: ("git", "pm2"),
    BackendVariant.COMPILED: ("git",),
    BackendVariant.CONTAINERIZED: ("git",),
    BackendVariant.SUPERVISED: ("git", "composer"),
}


def _settings(args: argparse.Namespace) -> ServiceSettings:
    settings = ServiceSettings()
    if getattr(args, "config", None):
        settings = settings.model_copy(update={"config_path": Path(args.config)})
    return settings


def _write_json(payload: object) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _setup(args: argparse.Namespace, settings: ServiceSettings) -> int:
    if args.config is None and "PUSHDEPLOY_CONFIG_PATH" not in os.environ:
        settings = settings.model_copy(
            update={"config_path": Path(args.app_dir).resolve() / DEFAULT_CONFIG_NAME}
        )
    config_path = settings.config_path
    secret: dict[str, str] = {}
    if config_path.exists():
        existing = DeployConfig.load(config_path)
        secret["webhook_secret"] = existing.webhook_secret
    config = DeployConfig(
        app_name=args.app_name,
        app_dir=Path(args.app_dir).resolve(),
        app_port=args.app_port,
        webhook_port=args.webhook_port,
        backend=BackendRegistry.parse(args.backend).value,
        branch=args.branch,
        runtime_version=args.runtime_version,
        **secret,
    )
    configure_logging(
        settings.log_file or config.default_log_file(),
        logging.DEBUG if args.verbose else logging.INFO,
    )
    config.save(config_path)
    logger.info("Wrote deploy config %s", config_path)

    runner = CommandRunner()
    variant = BackendRegistry.parse(config.backend)
    if not args.skip_runtime:
        installer = RuntimeInstaller(runner)
        installer.ensure_runtime(variant, config.runtime_version)
        for tool in _BACKEND_TOOLS[variant]:
            installer.ensure_tool(tool)

    descriptor = BackendRegistry(runner).get(variant, config)
    services = ServiceInstaller(runner)
    services.install(services.render(descriptor), enable=not args.no_enable)
    services.install(services.render_listener(config, config_path), enable=not args.no_enable)

    _write_json(
        {
            "app_name": config.app_name,
            "backend": config.backend,
            "webhook_url": f"http://<server>:{config.webhook_port}/hooks/{config.hook_id}",
            "webhook_secret": config.webhook_secret,
            "config_path": str(config_path),
        }
    )
    if args.deploy:
        return _deploy(config, settings)
    return 0


def _deploy(config: DeployConfig, settings: ServiceSettings) -> int:
    pipeline = DeployPipeline.from_config(config, settings)
    attempt = pipeline.run()
    store = SQLiteStore(settings.db_path)
    asyncio.run(store.record_attempt(attempt.to_record(config.app_name), attempt.events))
    _write_json(attempt.as_payload())
    return _EXIT_CODES.get(attempt.state, 2)


def _status(config: DeployConfig, settings: ServiceSettings) -> int:
    lock = LockManager(settings.lock_path or config.default_lock_path())
    holder = lock.holder()
    last = asyncio.run(SQLiteStore(settings.db_path).latest_attempt())
    descriptor = BackendRegistry(CommandRunner()).get(config.backend, config)
    try:
        service = descriptor.controller.status(descriptor.work_dir)
    except CommandError as exc:
        logger.debug("Service status unavailable: %s", exc)
        service = "unknown"
    _write_json(
        {
            "app_name": config.app_name,
            "backend": config.backend,
            "service": service,
            "in_progress": holder is not None,
            "lock": holder.as_payload() if holder is not None else None,
            "last_attempt": last.model_dump(mode="json") if last is not None else None,
        }
    )
    return 0


def _render_unit(args: argparse.Namespace, config: DeployConfig, settings: ServiceSettings) -> int:
    services = ServiceInstaller()
    if args.listener:
        rendered = services.render_listener(config, settings.config_path)
    else:
        rendered = services.render(BackendRegistry().get(config.backend, config))
    sys.stdout.write(f"# {rendered.path}\n{rendered.content}")
    return 0


def _serve(args: argparse.Namespace, config: DeployConfig, settings: ServiceSettings) -> int:
    from pushdeploy.api import app as api_app
    from pushdeploy.api.deps import reset_caches

    os.environ["PUSHDEPLOY_CONFIG_PATH"] = str(settings.config_path)
    if args.host:
        os.environ["PUSHDEPLOY_HOST"] = args.host
    if args.port:
        os.environ["PUSHDEPLOY_PORT"] = str(args.port)
    reset_caches()
    api_app.run(config)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Push-triggered deployment for a single host")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def with_config(sub: argparse.ArgumentParser) -> argparse.ArgumentParser:
        sub.add_argument("--config", default=None, help="Deploy config path (.deploy-config)")
        return sub

    setup = with_config(
        subparsers.add_parser("setup", help="Write the deploy config and install services")
    )
    setup.add_argument("--app-name", required=True, help="Application name")
    setup.add_argument("--app-dir", required=True, help="Checked-out application directory")
    setup.add_argument(
        "--backend",
        default=BackendVariant.INTERPRETED.value,
        choices=BackendRegistry.variants(),
        help="Runtime backend",
    )
    setup.add_argument("--app-port", type=int, default=3000, help="Application port")
    setup.add_argument("--webhook-port", type=int, default=9000, help="Webhook listener port")
    setup.add_argument("--branch", default="main", help="Branch that triggers deploys")
    setup.add_argument("--runtime-version", default=None, help="Minimum runtime version")
    setup.add_argument(
        "--skip-runtime", action="store_true", help="Do not install the runtime and tools"
    )
    setup.add_argument(
        "--no-enable", action="store_true", help="Write units without enabling them"
    )
    setup.add_argument("--deploy", action="store_true", help="Run a first deploy afterwards")

    with_config(subparsers.add_parser("deploy", help="Run the deploy pipeline once"))
    with_config(subparsers.add_parser("status", help="Show lock holder and last attempt"))

    serve = with_config(subparsers.add_parser("serve", help="Run the webhook listener"))
    serve.add_argument("--host", default=None, help="Bind address")
    serve.add_argument("--port", type=int, default=None, help="Bind port")

    render = with_config(
        subparsers.add_parser("render-unit", help="Print the supervisor definition")
    )
    render.add_argument(
        "--listener", action="store_true", help="Render the webhook listener unit instead"
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = _settings(args)
    level = logging.DEBUG if args.verbose else logging.INFO

    try:
        if args.command == "setup":
            return _setup(args, settings)

        config = DeployConfig.load(settings.config_path)
        if args.command == "render-unit":
            return _render_unit(args, config, settings)

        configure_logging(settings.log_file or config.default_log_file(), level)
        if args.command == "deploy":
            return _deploy(config, settings)
        if args.command == "status":
            return _status(config, settings)
        if args.command == "serve":
            return _serve(args, config, settings)
    except ConfigError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 2
    except DeployError as exc:
        logger.error("%s", exc)
        return 1

    raise ValueError(f"Unsupported command: {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
