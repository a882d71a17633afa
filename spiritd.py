#!/usr/bin/env python3
"""spiritd — a daemon that runs one chat-room agent per tenant.

Entry point. Wires config → browser pool → vault → reply pipeline →
dispatcher → supervisor → HTTP API. Handles PID file, Unix signals, the
one-time login setup, and graceful shutdown.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import resource
import signal
import sys
import time
from pathlib import Path

# Add spiritd directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from ai import AIService
from config import Config, ConfigError, load_config
from dispatch import Dispatcher
from http_api import HTTPApi
from persona import PersonaBuilder
from playback import PlaybackTimeouts
from reply import ReplyPipeline
from rooms import HandleOpenError
from rooms.browser import BrowserPool, setup_login
from session import SessionRegistry
from supervisor import Supervisor
from vault import CredentialVault

log = logging.getLogger("spiritd")

# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if path.exists():
        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except PermissionError:
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            log.info("Stale PID file found, removing")
            path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.debug("PID file cleanup failed: %s", e)


def _memory_mb() -> int:
    # ru_maxrss is KiB on Linux
    return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss // 1024


def build_playback_timeouts(config: Config) -> PlaybackTimeouts:
    d = PlaybackTimeouts()
    return PlaybackTimeouts(
        reveal=config.playback_timeout("reveal", d.reveal),
        open=config.playback_timeout("open", d.open),
        search=config.playback_timeout("search", d.search),
        results=config.playback_timeout("results", d.results),
        play=config.playback_timeout("play", d.play),
        stop=config.playback_timeout("stop", d.stop),
    )


class SpiritDaemon:
    def __init__(self, config: Config):
        self.config = config
        self.start_time = time.time()
        self.registry = SessionRegistry()
        self.browser: BrowserPool | None = None
        self.persona: PersonaBuilder | None = None
        self.supervisor: Supervisor | None = None
        self._http_api: HTTPApi | None = None
        self._stop_event: asyncio.Event | None = None

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr handler (for journald)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "anthropic", "openai", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _build_components(self) -> None:
        """Wire vault → AI → persona → pipeline → dispatcher → supervisor."""
        cfg = self.config
        playback_timeouts = build_playback_timeouts(cfg)
        vault = CredentialVault(cfg.vault_secret, salt=cfg.vault_salt)
        ai = AIService(
            cfg.model_config("primary"),
            cfg.suggest_model_config,
            timeout=cfg.ai_timeout,
        )
        self.persona = PersonaBuilder(
            cfg.workspace,
            cfg.persona_files,
            owner=cfg.persona_owner,
            people=cfg.persona_people,
            max_chars=cfg.max_reply_chars,
        )
        pipeline = ReplyPipeline(
            ai, vault, self.persona, cfg.agent_name,
            context_size=cfg.context_size,
            max_chars=cfg.max_reply_chars,
            send_delay=cfg.send_delay,
            acks=cfg.acks,
        )
        dispatcher = Dispatcher(
            pipeline,
            aliases=cfg.aliases,
            sigil=cfg.command_sigil,
            action_keywords=cfg.action_keywords,
            play_exclusions=cfg.play_exclusions,
            suggest_command=cfg.suggest_command,
            playback_timeouts=playback_timeouts,
        )
        self.supervisor = Supervisor(
            self.registry,
            vault,
            self.browser.open_room,
            pipeline,
            dispatcher,
            base_url=cfg.base_url,
            intro_message=cfg.intro_message,
            poll_interval=cfg.poll_interval,
            failure_threshold=cfg.failure_threshold,
            self_names=cfg.self_names,
            playback_timeouts=playback_timeouts,
        )

    def _build_status(self) -> dict:
        """Build status dict for HTTP /health and SIGUSR2."""
        return {
            "status": "ok",
            "activeSessions": len(self.registry),
            "uptime": round(time.time() - self.start_time),
            "memoryMb": _memory_mb(),
            "pid": os.getpid(),
        }

    def request_shutdown(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr1():
            log.info("SIGUSR1: reloading persona files")
            if self.persona:
                self.persona.reload()

        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            status = self._build_status()
            status["sessions"] = self.registry.summaries()
            status_path = self.config.state_dir / "status.json"
            status_path.write_text(json.dumps(status, indent=2))

        def handle_sigterm():
            log.info("SIGTERM: shutting down gracefully")
            self.request_shutdown()

        try:
            loop.add_signal_handler(signal.SIGUSR1, handle_sigusr1)
            loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def run(self) -> None:
        """Main entry point — starts all components and runs until signalled."""
        cfg = self.config
        pid_path = cfg.pid_file

        self._setup_logging()
        log.info("Starting spiritd for '%s'", cfg.agent_name)

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)
        self._stop_event = asyncio.Event()

        try:
            self.browser = BrowserPool(
                cfg.auth_state,
                cfg.base_url,
                headless=cfg.headless,
                navigation_timeout=cfg.navigation_timeout,
                settle_delay=cfg.settle_delay,
                action_timeout=cfg.action_timeout,
                results_settle=cfg.results_settle,
            )
            await self.browser.start()
            self._build_components()

            loop = asyncio.get_running_loop()
            self._setup_signals(loop)

            self._http_api = HTTPApi(
                self.supervisor,
                host=cfg.http_host,
                port=cfg.http_port,
                auth_token=cfg.http_auth_token,
                get_status=self._build_status,
                max_body_bytes=cfg.http_max_body_bytes,
                rate_limit=cfg.http_rate_limit,
                rate_window=cfg.http_rate_window,
                status_rate_limit=cfg.http_status_rate_limit,
            )
            await self._http_api.start()

            log.info("spiritd running (PID %d)", os.getpid())
            await self._stop_event.wait()

        except HandleOpenError as e:
            log.error("Browser not ready: %s", e)
            raise
        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            await self._shutdown()
            _remove_pid_file(pid_path)
            log.info("spiritd stopped")

    async def _shutdown(self) -> None:
        if self.supervisor is not None:
            await self.supervisor.shutdown_all(timeout=self.config.shutdown_timeout)
        if self._http_api is not None:
            try:
                await self._http_api.stop()
            except Exception as e:
                log.warning("HTTP API stop failed: %s", e)
        if self.browser is not None:
            await self.browser.stop()


async def _wait_for_enter() -> None:
    await asyncio.to_thread(input, "Press ENTER after you have logged in: ")


def run_setup(config: Config) -> None:
    """Interactive one-time login that saves the browser template."""
    print("A browser window will open at", config.base_url)
    print("Sign in with the agent's account, wait for the home page,")
    print("then come back here and press ENTER.")
    asyncio.run(setup_login(config.auth_state, config.base_url, _wait_for_enter))
    print(f"Login saved to {config.auth_state}")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="spiritd — one chat-room agent per tenant",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("SPIRITD_CONFIG", "./spiritd.toml"),
        help="Path to config file (default: $SPIRITD_CONFIG or ./spiritd.toml)",
    )
    parser.add_argument(
        "--setup", action="store_true",
        help="Open a browser for the one-time manual login, then exit",
    )
    parser.add_argument(
        "--headed", action="store_true",
        help="Run the browser with a visible window",
    )
    args = parser.parse_args()

    overrides = {}
    if args.headed:
        overrides["browser.headless"] = False

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    if args.setup:
        run_setup(config)
        return

    daemon = SpiritDaemon(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass
    except HandleOpenError:
        sys.exit(1)


if __name__ == "__main__":
    main()
