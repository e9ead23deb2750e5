"""
Automaton entry point — logging setup and the console script.

    automaton run        start the daemon (turn loop + heartbeat)
    automaton status     show persisted state
    automaton audit      show recent self-modifications
"""

from __future__ import annotations

import logging
import os

import structlog

_SECRET_KEYS = {"api_key", "auth_token", "private_key", "authorization", "password"}
_SECRET_MARKER = "[redacted]"


def _redact_secret_fields(logger, method_name, event_dict):
    """
    Structlog processor that masks credentials before anything is rendered.

    Tool arguments and config dumps can carry keys; the log must never hold
    them in plaintext.
    """
    for key in list(event_dict):
        if key.lower() in _SECRET_KEYS and event_dict[key]:
            event_dict[key] = _SECRET_MARKER
    return event_dict


_logging_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; subsequent calls are no-ops.
    ``AUTOMATON_LOG_LEVEL`` is used when no level is passed.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    level_name = (level or os.environ.get("AUTOMATON_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(format="%(message)s", level=getattr(logging, level_name, logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_secret_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def main() -> None:
    """Entry point for the automaton command."""
    from automaton.cli.app import cli

    cli(obj={})


if __name__ == "__main__":
    main()
