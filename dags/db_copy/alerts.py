import logging
from typing import Iterable, Optional

import requests

from db_copy.models import TableStatus, TableSyncState

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # Discord message hard limit (approx)


def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 20] + "\n… (truncated)"


def format_failure_report(pair: str, tables: Iterable[TableSyncState], max_lines: int = 25) -> Optional[str]:
    """Build the alert body for tables left in Error; None when every table is fine."""
    failed = sorted((t for t in tables if t.status == TableStatus.ERROR), key=lambda t: t.table_name)
    if not failed:
        return None
    lines = [f"- `{t.table_name}`: {t.error or 'unknown error'}" for t in failed[:max_lines]]
    if len(failed) > max_lines:
        lines.append(f"- … and {len(failed) - max_lines} more")
    header = f"❗ **Table copy failures** `{pair}`: {len(failed)} table(s) in error"
    return header + "\n" + "\n".join(lines)


def send_discord_alert(webhook_url: Optional[str], message: str,
                       username: Optional[str] = "Database Copy Alert",
                       avatar_url: Optional[str] = None) -> bool:
    """
    Post `message` to a Discord webhook. Returns True when Discord accepted it.
    Discord answers 204 for plain calls and 200 when the URL carries '?wait=true'.
    """
    if not webhook_url:
        log.warning("No Discord webhook URL configured, skipping alert.")
        return False

    payload = {
        "content": _truncate_for_discord(message),
        "username": username,
    }
    if avatar_url:
        payload["avatar_url"] = avatar_url

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        log.exception("Exception while sending Discord alert: %s", e)
        return False

    if response.status_code in (200, 204):
        log.info("Discord alert sent successfully (status %s).", response.status_code)
        return True
    log.error("Failed to send Discord alert: status=%s body=%s", response.status_code, response.text)
    return False
