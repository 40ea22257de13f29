"""Command-line bootstrap for the Inkwell conversation engine."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.errors import ConfigurationError
from .ai.orchestration.loop import LoopOutcome
from .ai.prompts import WRITING_COMMANDS
from .ai.service import ChatService
from .services.credentials import CredentialVault, redact_secret
from .services.settings import EngineLimits, Settings, SettingsLoader, provider_kind_names
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def configure_logging(debug: bool = False, *, log_dir: str | None = None, force: bool = False) -> None:
    """Configure structured logging for the command-line tool."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, log_dir=log_dir, console=debug, force=force)
    _LOGGER.debug(
        "Logging configured (level=%s, file=%s)",
        logging.getLevelName(level),
        logging_utils.get_log_path(),
    )


def load_settings(
    path: Optional[Path] = None,
    *,
    loader: SettingsLoader | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_loader = loader or SettingsLoader(path)
    try:
        settings = active_loader.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_loader.path, exc)
        settings = Settings()
    return settings


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `inkwell` console script."""

    args = _parse_cli_args(argv)

    debug = _env_flag("INKWELL_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("INKWELL_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    loader = SettingsLoader(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    if args.provider:
        cli_overrides["active_provider_id"] = args.provider

    settings = load_settings(resolved_path, loader=loader, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, loader, overrides=cli_overrides)
        return 0

    if (settings.debug_logging and not debug) or settings.log_dir:
        debug = debug or settings.debug_logging
        configure_logging(debug, log_dir=settings.log_dir, force=True)

    vault = CredentialVault()
    if args.store_credential:
        return _store_credential(vault, args.store_credential)

    service = ChatService(settings.active_provider, vault=vault, limits=settings.limits)
    try:
        return asyncio.run(_run(service, args))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130


async def _run(service: ChatService, args: argparse.Namespace) -> int:
    try:
        if args.test_connection:
            return await _test_connection(service, resolve=args.resolve_base_url)
        if not args.prompt and not args.command:
            print("Nothing to do: pass a prompt or --command (see --help).", file=sys.stderr)
            return 2
        if not service.is_configured():
            print("No usable AI provider is configured.", file=sys.stderr)
            return 1
        outcome = await _chat(service, args)
    except (ConfigurationError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        await service.aclose()
    return 0 if outcome.succeeded else 1


async def _chat(service: ChatService, args: argparse.Namespace) -> LoopOutcome:
    def on_content(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    def on_tool(call_id: str, name: str, arguments: Mapping[str, Any]) -> None:
        print(f"\n[tool] {name} ({call_id})", file=sys.stderr)

    if args.command:
        selected = _read_input(args.input_file)
        outcome = await service.run_command(
            args.command,
            selected_text=selected,
            document_content=selected,
            custom_prompt=" ".join(args.prompt) or None,
            target_language=args.language,
            content_callback=on_content,
        )
    else:
        outcome = await service.send_chat_message(
            " ".join(args.prompt),
            document_context=_read_input(args.input_file),
            content_callback=on_content,
            tool_callback=on_tool,
        )
    sys.stdout.write("\n")
    if outcome.error is not None and not outcome.succeeded:
        print(f"[{outcome.state.value}] {outcome.error.message}", file=sys.stderr)
    _LOGGER.info(
        "Turn finished: state=%s rounds=%d tools=%d",
        outcome.state.value,
        outcome.rounds,
        len(outcome.tool_records),
    )
    return outcome


async def _test_connection(service: ChatService, *, resolve: bool) -> int:
    if resolve:
        resolved = await service.resolve_base_url()
        if resolved is None:
            print("Connection failed for every base URL candidate.", file=sys.stderr)
            return 1
        print(f"Connection OK (base URL: {resolved or 'provider default'})")
        return 0
    if await service.test_connection():
        print("Connection OK")
        return 0
    print("Connection failed.", file=sys.stderr)
    return 1


def _store_credential(vault: CredentialVault, credential_ref: str) -> int:
    if sys.stdin.isatty():
        secret = getpass.getpass(f"Secret for {credential_ref}: ")
    else:
        secret = sys.stdin.readline()
    secret = secret.strip()
    if not secret:
        print("No secret provided.", file=sys.stderr)
        return 2
    vault.store(credential_ref, secret)
    print(f"Stored credential {credential_ref} ({redact_secret(secret)})")
    return 0


def _read_input(path: str | None) -> str | None:
    if not path:
        return None
    if path == "-":
        return sys.stdin.read()
    return Path(path).expanduser().read_text(encoding="utf-8")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="inkwell",
        add_help=True,
        description="Talk to the configured AI provider or inspect the engine configuration.",
    )
    parser.add_argument("prompt", nargs="*", help="Chat message (or custom prompt for --command).")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.inkwell/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a setting or engine limit before running (repeatable).",
    )
    parser.add_argument("--provider", metavar="ID", help="Use this provider entry instead of the active one.")
    parser.add_argument(
        "--store-credential",
        metavar="REF",
        help="Read a secret from stdin and store it encrypted under REF.",
    )
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Send a short probe to the active provider and report the result.",
    )
    parser.add_argument(
        "--resolve-base-url",
        action="store_true",
        help="With --test-connection, strip base URL path segments until one answers.",
    )
    parser.add_argument(
        "--command",
        choices=sorted(WRITING_COMMANDS),
        help="Run a built-in writing command on --input-file.",
    )
    parser.add_argument("--input-file", metavar="PATH", help="Document text to work on ('-' for stdin).")
    parser.add_argument("--language", metavar="NAME", help="Target language for the translate command.")
    parser.epilog = "Provider kinds: " + ", ".join(provider_kind_names())
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    settings_fields = {item.name: item for item in fields(Settings)}
    limit_fields = {item.name: item for item in fields(EngineLimits)}
    type_hints = {**get_type_hints(EngineLimits), **get_type_hints(Settings)}
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key == "limits" or (key not in settings_fields and key not in limit_fields):
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, (settings_fields.get(key) or limit_fields[key]).type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is type(None) or normalized.lower() in {"none", "null"}:
        return None
    if target is list:
        try:
            return json.loads(normalized or "[]")
        except json.JSONDecodeError as exc:
            raise ValueError("List overrides must be valid JSON arrays") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    loader: SettingsLoader,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    active = settings.active_provider()
    metadata = {
        "path": str(loader.path),
        "active_provider": active.id if active is not None else None,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    # Credential variables are listed by name only; their values never leave the vault.
    return sorted(name for name in os.environ if name.startswith("INKWELL_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
