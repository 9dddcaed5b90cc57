#!/usr/bin/env python3
"""Watch local directories and relay new or modified files to a Telegram chat."""

from __future__ import annotations

import argparse
import logging
import os
import re
import shlex
import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import Optional, Sequence

from telegram_api import DEFAULT_API_URL, TelegramAPIConfig, TelegramAPIError, TelegramBotClient
from tgsync import (
    DEFAULT_INTERVAL,
    FilterPolicy,
    RegistrationError,
    ScanError,
    SyncError,
    SyncService,
)

DEFAULT_LOGFILE = '/var/log/tgcloud-sync/tgcloud-sync.log'

STARTUP_MESSAGE = "Bot started successfully! Starting file synchronization..."
SHUTDOWN_MESSAGE = "Bot is shutting down. Goodbye!"


def _expand_path(path: str) -> str:
    """Return a normalized absolute path with user expansion."""

    return os.path.abspath(os.path.expanduser(path))


def _resolve_logfile() -> Optional[str]:
    raw = os.environ.get('TGCLOUD_SYNC_LOGFILE')
    if raw is None:
        return DEFAULT_LOGFILE
    candidate = raw.strip()
    if not candidate:
        return None
    return _expand_path(candidate)


LOGFILE = _resolve_logfile()

# ─── Logging setup ─────────────────────────────────────────────────────────────
logger = logging.getLogger('tgcloud-sync')
logger.setLevel(logging.INFO)
logger.propagate = False

fmt = logging.Formatter('%(asctime)s %(levelname)-8s %(message)s')

LOG_HANDLERS: list[logging.Handler] = []

sh = logging.StreamHandler(sys.stdout)
sh.setLevel(logging.INFO)
sh.setFormatter(fmt)
logger.addHandler(sh)
LOG_HANDLERS.append(sh)

if LOGFILE:
    logdir = os.path.dirname(LOGFILE)
    try:
        os.makedirs(logdir, exist_ok=True)
        fh = logging.FileHandler(LOGFILE)
        fh.setLevel(logging.INFO)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
        LOG_HANDLERS.append(fh)
    except OSError as e:
        logger.error("Could not open log file %s: %s", LOGFILE, e)
# ────────────────────────────────────────────────────────────────────────────────


def set_logging_verbosity(enable_debug: bool) -> None:
    level = logging.DEBUG if enable_debug else logging.INFO
    logger.setLevel(level)
    for handler in LOG_HANDLERS:
        handler.setLevel(level)

    # The engine logs under its own name; route it through the same handlers.
    engine_logger = logging.getLogger('tgsync')
    engine_logger.setLevel(level)
    engine_logger.propagate = False
    for handler in LOG_HANDLERS:
        if handler not in engine_logger.handlers:
            engine_logger.addHandler(handler)


TRUE_VALUES = {'1', 'true', 'yes', 'on'}
FALSE_VALUES = {'0', 'false', 'no', 'off'}

ENV_BOOL_FLAGS: dict[str, str] = {
    'VERBOSE': '--verbose',
    'DRY_RUN': '--dry-run',
    'ONCE': '--once',
    'INSECURE': '--insecure',
    'NO_PROGRESS': '--no-progress',
}

ENV_TOGGLE_FLAGS: dict[str, tuple[str, str]] = {
    'RETRY_FAILED': ('--retry-failed', '--no-retry-failed'),
}

ENV_VALUE_FLAGS: dict[str, str] = {
    'TELEGRAM_BOT_TOKEN': '--bot-token',
    'TELEGRAM_CHAT_ID': '--chat-id',
    'TELEGRAM_API_URL': '--api-url',
    'SYNC_INTERVAL': '--interval',
    'ALLOW_MATCH': '--allow-match',
    'UPLOAD_TIMEOUT': '--upload-timeout',
}

# Comma-separated lists, one flag per item.
ENV_LIST_FLAGS: dict[str, str] = {
    'TELEGRAM_WATCH_DIRS': '--watch-dir',
    'WHITELIST_REGEXP': '--allow',
    'BLACKLIST_REGEXP': '--deny',
}


def _parse_env_bool(value: str) -> Optional[bool]:
    stripped = value.strip()
    hash_index = stripped.find('#')
    if hash_index != -1:
        stripped = stripped[:hash_index].rstrip()
    if stripped == '':
        return None
    lowered = stripped.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    return None


def _env_switch(env, var: str) -> Optional[bool]:
    """Read *var* as a boolean; unset or unparseable values give None."""

    raw = env.get(var)
    if raw is None:
        return None
    result = _parse_env_bool(raw)
    if result is None:
        logger.warning(
            "Ignoring %s=%s (expected one of %s or %s)",
            var,
            raw,
            '/'.join(sorted(TRUE_VALUES)),
            '/'.join(sorted(FALSE_VALUES)),
        )
    return result


def _split_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(',') if item.strip()]


def _collect_cli_args_from_env(environ: Optional[dict[str, str]] = None) -> list[str]:
    env = os.environ if environ is None else environ
    cli_args: list[str] = []

    for var, flag in ENV_BOOL_FLAGS.items():
        if _env_switch(env, var):
            cli_args.append(flag)

    for var, (enable_flag, disable_flag) in ENV_TOGGLE_FLAGS.items():
        result = _env_switch(env, var)
        if result is not None:
            cli_args.append(enable_flag if result else disable_flag)

    for var, flag in ENV_VALUE_FLAGS.items():
        value = env.get(var, '').strip()
        if value:
            cli_args.extend([flag, value])

    for var, flag in ENV_LIST_FLAGS.items():
        for item in _split_list(env.get(var, '')):
            cli_args.extend([flag, item])

    extra = env.get('EXTRA_ARGS')
    if extra:
        try:
            cli_args.extend(shlex.split(extra))
        except ValueError as exc:
            logger.warning("Could not parse EXTRA_ARGS (%s): %s", extra, exc)

    return cli_args


DURATION_RE = re.compile(r'^\s*(?P<value>\d+(?:\.\d*)?|\.\d+)\s*(?P<unit>ms|s|m|h)?\s*$', re.IGNORECASE)
DURATION_UNITS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}


def parse_duration(raw: str) -> float:
    """Parse ``5``, ``2.5s``, ``500ms``, ``1m`` or ``1h`` into seconds."""

    match = DURATION_RE.match(raw)
    if not match:
        raise argparse.ArgumentTypeError(f"invalid duration: {raw!r}")
    unit = (match.group('unit') or 's').lower()
    return float(match.group('value')) * DURATION_UNITS[unit]


def _regex(raw: str) -> re.Pattern:
    try:
        return re.compile(raw)
    except re.error as exc:
        raise argparse.ArgumentTypeError(f"invalid regular expression {raw!r}: {exc}") from exc


@dataclass
class Config:
    """Runtime configuration for the daemon."""

    bot_token: str
    chat_id: str
    watch_dirs: tuple[str, ...]
    api_url: str = DEFAULT_API_URL
    interval: float = DEFAULT_INTERVAL
    allow: tuple[re.Pattern, ...] = field(default_factory=tuple)
    deny: tuple[re.Pattern, ...] = field(default_factory=tuple)
    allow_match_all: bool = True
    retry_failed: bool = True
    upload_timeout: float = 300
    verify_tls: bool = True
    once: bool = False
    show_progress: bool = True
    dry_run: bool = False
    verbose: bool = False

    def __post_init__(self) -> None:
        api_url = self.api_url.strip()
        if not api_url:
            raise ValueError("Telegram API URL cannot be empty")
        self.api_url = api_url
        normalized: list[str] = []
        seen = set()
        for raw in self.watch_dirs:
            path = _expand_path(raw)
            if path not in seen:
                normalized.append(path)
                seen.add(path)
        if not normalized:
            raise ValueError("At least one watch directory must be provided")
        self.watch_dirs = tuple(normalized)


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    p = argparse.ArgumentParser(
        description="tgcloud-sync: relay new and modified files to a Telegram chat",
    )
    p.add_argument('--bot-token', help="Telegram bot token (or TELEGRAM_BOT_TOKEN)")
    p.add_argument('--chat-id', help="Destination chat or channel id (or TELEGRAM_CHAT_ID)")
    p.add_argument('--api-url', default=DEFAULT_API_URL,
                   help="Bot API base URL the token is appended to (default %(default)s)")
    p.add_argument('-I', '--watch-dir', dest='watch_dirs', action='append', default=[],
                   help="Directory to watch (repeat for several; or TELEGRAM_WATCH_DIRS)")
    p.add_argument('-i', '--interval', type=parse_duration, default=DEFAULT_INTERVAL,
                   help="Poll interval, e.g. 5, 5s, 500ms, 1m (default %(default)ss)")
    p.add_argument('--allow', action='append', type=_regex, default=[],
                   help="Only sync paths matching this regex (repeatable; or WHITELIST_REGEXP)")
    p.add_argument('--deny', action='append', type=_regex, default=[],
                   help="Never sync paths matching this regex (repeatable; or BLACKLIST_REGEXP)")
    p.add_argument('--allow-match', choices=('all', 'any'), default='all',
                   help="Whether a path must match all --allow patterns or any of them (default all)")
    p.add_argument('--retry-failed', dest='retry_failed', action='store_true', default=True,
                   help="Retry failed uploads on the next cycle (default)")
    p.add_argument('--no-retry-failed', dest='retry_failed', action='store_false',
                   help="Record files before upload; failed uploads wait for the next change")
    p.add_argument('--upload-timeout', type=parse_duration, default=300,
                   help="Timeout for a single upload request (default %(default)ss)")
    p.add_argument('--insecure', action='store_true', help="Disable TLS verification")
    p.add_argument('--once', action='store_true',
                   help="Sync every watch directory once and exit")
    p.add_argument('-p', '--no-progress', action='store_true',
                   help="Disable the progress bar in --once mode")
    p.add_argument('-n', '--dry-run', action='store_true',
                   help="Log uploads without calling the Bot API")
    p.add_argument('-v', '--verbose', action='store_true',
                   help="Enable verbose logging output")

    args = p.parse_args(argv)
    if not args.bot_token:
        p.error("a bot token is required (--bot-token or TELEGRAM_BOT_TOKEN)")
    if not args.chat_id:
        p.error("a chat id is required (--chat-id or TELEGRAM_CHAT_ID)")
    if not args.watch_dirs:
        p.error("at least one --watch-dir (or TELEGRAM_WATCH_DIRS) is required")
    if not args.api_url.strip():
        p.error("--api-url (or TELEGRAM_API_URL) cannot be empty")

    return Config(
        bot_token=args.bot_token,
        chat_id=args.chat_id,
        watch_dirs=tuple(args.watch_dirs),
        api_url=args.api_url,
        interval=args.interval,
        allow=tuple(args.allow),
        deny=tuple(args.deny),
        allow_match_all=args.allow_match == 'all',
        retry_failed=args.retry_failed,
        upload_timeout=args.upload_timeout,
        verify_tls=not args.insecure,
        once=args.once,
        show_progress=not args.no_progress,
        dry_run=args.dry_run,
        verbose=args.verbose,
    )


def build_service(cfg: Config) -> tuple[TelegramBotClient, SyncService]:
    client = TelegramBotClient(
        TelegramAPIConfig(
            token=cfg.bot_token,
            api_url=cfg.api_url,
            verify_tls=cfg.verify_tls,
            upload_timeout=cfg.upload_timeout,
            dry_run=cfg.dry_run,
        )
    )
    policy = FilterPolicy(allow=cfg.allow, deny=cfg.deny, match_all=cfg.allow_match_all)
    service = SyncService(client, cfg.chat_id, filter_policy=policy, retry_failed=cfg.retry_failed)
    return client, service


def notify(client: TelegramBotClient, chat_id: str, text: str) -> None:
    try:
        msg = client.send_message(chat_id, text)
    except TelegramAPIError as exc:
        logger.error("Failed to send notification %r: %s", text, exc)
        return
    logger.info("Notification sent (message id %s)", msg.message_id)


def run_once(cfg: Config, service: SyncService) -> int:
    """Sync each watch directory once; return the number of roots that failed."""

    failures = 0
    for index, root in enumerate(cfg.watch_dirs, start=1):
        logger.debug("Syncing %d/%d: %s", index, len(cfg.watch_dirs), root)
        try:
            service.sync_once(root, show_progress=cfg.show_progress)
        except (RegistrationError, ScanError) as exc:
            logger.error("Failed to sync %s: %s", root, exc)
            failures += 1
    return failures


def start_watching(cfg: Config, service: SyncService) -> int:
    """Start a poller per watch directory; return how many started."""

    logger.info("Starting continuous sync for %d director%s...",
                len(cfg.watch_dirs), "y" if len(cfg.watch_dirs) == 1 else "ies")
    started = 0
    for root in cfg.watch_dirs:
        try:
            service.start_continuous_sync(root, cfg.interval)
        except SyncError as exc:
            logger.error("Failed to start continuous sync for %s: %s", root, exc)
            continue
        logger.info("Started continuous sync for: %s (interval: %gs)", root, cfg.interval)
        started += 1
    return started


def main(argv: Optional[Sequence[str]] = None) -> int:
    env_args = _collect_cli_args_from_env()
    cfg = parse_args([*env_args, *(sys.argv[1:] if argv is None else argv)])
    set_logging_verbosity(cfg.verbose)

    client, service = build_service(cfg)
    logger.debug("Filter policy: %r", service.filter_policy)

    if cfg.once:
        failures = run_once(cfg, service)
        return 1 if failures else 0

    stop_event = threading.Event()

    def handle_sig(signum, frame):
        logger.info("Received signal %s, shutting down gracefully...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_sig)
    signal.signal(signal.SIGTERM, handle_sig)

    notify(client, cfg.chat_id, STARTUP_MESSAGE)
    if not start_watching(cfg, service):
        logger.error("No watch directory could be started")
        service.stop()
        notify(client, cfg.chat_id, SHUTDOWN_MESSAGE)
        return 1

    logger.info("Bot is running. Press Ctrl+C to stop...")
    try:
        while not stop_event.wait(0.5):
            pass
    finally:
        service.stop()
        notify(client, cfg.chat_id, SHUTDOWN_MESSAGE)
        logger.info("Bot stopped successfully.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
