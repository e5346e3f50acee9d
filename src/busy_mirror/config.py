"""
INI configuration file parsing.

Layout::

    [busy-mirror]
    look_ahead_days = 30

    [destination <calendar-uid>]
    sources =
        <source-uid>
        <source-uid>
    require_accepted = <source-uid>
"""

import re
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from configparser import SectionProxy
from pathlib import Path

from busy_mirror.models import DEFAULT_LOOK_AHEAD_DAYS
from busy_mirror.models import ConfigError
from busy_mirror.models import DestinationConfig
from busy_mirror.models import MirrorConfig
from busy_mirror.models import SmtpSettings
from busy_mirror.models import SourceRef

MAIN_SECTION = "busy-mirror"
DESTINATION_PREFIX = "destination "

_LIST_SPLIT_RE = re.compile(r"[,\s]+")


def split_list(value: str | None) -> list[str]:
    """Split a comma- or newline-separated option value."""
    if not value:
        return []
    return [item for item in _LIST_SPLIT_RE.split(value.strip()) if item]


def _positive_int(section: SectionProxy, option: str) -> int | None:
    if option not in section:
        return None
    try:
        value = section.getint(option)
    except ValueError:
        raise ConfigError(f"[{section.name}] {option} must be an integer") from None
    if value <= 0:
        raise ConfigError(f"[{section.name}] {option} must be positive")
    return value


def _boolean(section: SectionProxy, option: str, default: bool = False) -> bool:
    try:
        return section.getboolean(option, fallback=default)
    except ValueError:
        raise ConfigError(f"[{section.name}] {option} must be yes/no") from None


def _parse_destination(section: SectionProxy) -> DestinationConfig:
    dest_id = section.name[len(DESTINATION_PREFIX):].strip()
    if not dest_id:
        raise ConfigError(f"[{section.name}] has no calendar UID")

    source_ids = split_list(section.get("sources"))
    if not source_ids:
        raise ConfigError(f"[{section.name}] lists no sources")
    if dest_id in source_ids:
        raise ConfigError(f"[{section.name}] cannot be its own source")

    accepted_ids = set(split_list(section.get("require_accepted")))
    unknown = accepted_ids.difference(source_ids)
    if unknown:
        raise ConfigError(
            f"[{section.name}] require_accepted names unknown source(s): "
            f"{', '.join(sorted(unknown))}"
        )

    return DestinationConfig(
        id=dest_id,
        sources=[SourceRef(sid, require_accepted=sid in accepted_ids) for sid in source_ids],
        look_ahead_days=_positive_int(section, "look_ahead_days"),
        notify_emails=split_list(section.get("notify_emails")),
        managed_only=_boolean(section, "managed_only"),
        protect_failed_sources=_boolean(section, "protect_failed_sources"),
    )


def _parse_smtp(section: SectionProxy) -> SmtpSettings | None:
    host = section.get("smtp_host")
    if not host:
        return None
    return SmtpSettings(
        host=host,
        port=_positive_int(section, "smtp_port") or 587,
        starttls=_boolean(section, "smtp_starttls", default=True),
        user=section.get("smtp_user"),
        sender=section.get("smtp_sender") or section.get("smtp_user"),
        password_env=section.get("smtp_password_env", "BUSY_MIRROR_SMTP_PASSWORD"),
    )


def parse_config(parser: ConfigParser) -> MirrorConfig:
    """Build a MirrorConfig from an already-read parser."""
    main = parser[MAIN_SECTION] if MAIN_SECTION in parser else parser[parser.default_section]

    destinations = [
        _parse_destination(parser[name])
        for name in parser.sections()
        if name.startswith(DESTINATION_PREFIX)
    ]
    if not destinations:
        raise ConfigError("No [destination <calendar-uid>] sections configured")

    return MirrorConfig(
        destinations=destinations,
        look_ahead_days=_positive_int(main, "look_ahead_days") or DEFAULT_LOOK_AHEAD_DAYS,
        account_email=main.get("account_email") or None,
        smtp=_parse_smtp(main),
    )


def load_config(config_path: Path) -> MirrorConfig:
    """Read and validate the configuration file."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    parser = ConfigParser(interpolation=None)
    try:
        parser.read(config_path)
    except ConfigParserError as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}") from None
    return parse_config(parser)
