"""
Health check - sends a rule engine status message to Discord.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import requests

from kanban.database.connection import Database
from kanban.database.models import CardStatus, ExecutionStatus
from kanban.database.repository import (
    CardRepository,
    ExecutionRepository,
    RuleRepository,
    UserRepository,
)


def build_payload(db: Database, now: Optional[datetime] = None) -> dict[str, Any]:
    """Summarize users, enabled rules, cards per column and the last 24h of executions."""
    now = now or datetime.now()

    users = UserRepository(db).list_all()
    rules = RuleRepository(db).find_enabled_rules()
    cards_by_status = CardRepository(db).count_by_status()
    executions = ExecutionRepository(db).count_since(now - timedelta(hours=24))

    rule_list = "\n".join(
        f"[P{r.priority}] {r.name}: `{r.condition_expression}` -> {r.target_status.display_name}"
        for r in rules
    ) or "None"
    card_list = "\n".join(
        f"{status.display_name}: {cards_by_status[status]}"
        for status in CardStatus
        if cards_by_status.get(status)
    ) or "None"
    execution_list = ", ".join(
        f"{status.value}: {executions.get(status, 0)}" for status in ExecutionStatus
    )

    failed = executions.get(ExecutionStatus.FAILED, 0)
    return {
        "embeds": [{
            "title": "Stock Kanban Health Check",
            "description": (
                "Rule engine is running normally." if not failed
                else f"Rule engine is running, {failed} failed executions in the last 24h."
            ),
            "color": 0x2ECC71 if not failed else 0xFFA500,
            "fields": [
                {"name": "Users", "value": str(len(users)), "inline": True},
                {"name": "Cards", "value": card_list, "inline": True},
                {"name": "Executions (24h)", "value": execution_list, "inline": False},
                {"name": "Enabled Rules", "value": rule_list[:1024], "inline": False},
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }]
    }


def run_healthcheck(db: Database, webhook_url: Optional[str] = None) -> Optional[int]:
    """Run health check and send status to Discord.

    Args:
        db: Database instance (already initialized)
        webhook_url: Discord webhook; falls back to DISCORD_WEBHOOK_URL

    Returns:
        HTTP status code of the webhook call, or None if no webhook is configured
    """
    webhook_url = webhook_url or os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        print("DISCORD_WEBHOOK_URL not set")
        return None

    payload = build_payload(db)

    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    response = requests.post(webhook_url, json=payload, timeout=10)
    print(f"{now} - Health check sent (status: {response.status_code})")
    return response.status_code
