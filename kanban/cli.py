"""
CLI commands for the stock kanban rule engine.
"""

import argparse
import json
import sys
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from kanban.database.connection import Database
from kanban.database.models import Card, CardStatus, TriggerEvent, User
from kanban.database.repository import (
    AuditLogRepository,
    CardRepository,
    ExecutionRepository,
    IndicatorRepository,
    PriceRepository,
    RuleRepository,
    UserRepository,
)
from kanban.data.fetcher import PriceSync, StockDataFetcher
from kanban.errors import KanbanError, NotFoundError
from kanban.indicators.engine import IndicatorEngine
from kanban.rules.evaluator import ConditionEvaluator
from kanban.rules.service import RuleService
from kanban.services.audit import AuditService

STATUS_CHOICES = [s.value for s in CardStatus]


def add_user(
    db: Database,
    username: Optional[str] = None,
    email: Optional[str] = None,
    discord_webhook: Optional[str] = None,
) -> User:
    """Add a new user."""
    repo = UserRepository(db)
    user = User(username=username, email=email, discord_webhook_url=discord_webhook)
    return repo.create(user)


def add_card(
    db: Database,
    user_id: int,
    stock_code: str,
    stock_name: str = "",
    status: CardStatus = CardStatus.WATCH,
) -> Card:
    """Put a stock on a user's board."""
    if UserRepository(db).get_by_id(user_id) is None:
        raise NotFoundError(f"User not found: {user_id}")
    card = Card(
        user_id=user_id,
        stock_code=stock_code.upper(),
        stock_name=stock_name,
        status=CardStatus(status),
    )
    return CardRepository(db).create(card)


def move_card(db: Database, card_id: int, status: CardStatus, reason: str = "manual") -> Card:
    """Manually move a card to another column and audit it."""
    repo = CardRepository(db)
    card = repo.get_by_id(card_id)
    if card is None:
        raise NotFoundError(f"Card not found: {card_id}")

    previous = card.status
    new_status = CardStatus(status)
    repo.update_status(card.id, new_status)
    card.status = new_status
    AuditService(AuditLogRepository(db)).record_status_change(
        card.user_id, card, previous, new_status, reason
    )
    return card


def sync_prices(db: Database, stock_codes: Optional[list[str]] = None) -> dict:
    """Fetch quotes and history for the given codes, or every code on a card."""
    codes = stock_codes or CardRepository(db).list_stock_codes()
    result = PriceSync(StockDataFetcher(), PriceRepository(db)).sync(codes)
    return {"synced": result.synced, "failed": result.failed}


def calculate_indicators(db: Database, stock_codes: Optional[list[str]] = None) -> dict:
    """Recompute indicators for the given codes, or every code on a card."""
    codes = stock_codes or CardRepository(db).list_stock_codes()
    engine = IndicatorEngine(PriceRepository(db), IndicatorRepository(db))
    results = engine.calculate_batch(codes)
    return {
        "calculated": sorted(c for c, s in results.items() if not s.is_insufficient),
        "insufficient": sorted(c for c, s in results.items() if s.is_insufficient),
    }


def _print_page(page, formatter) -> None:
    for item in page.items:
        print(formatter(item))
    print(f"Page {page.page + 1}/{max(page.total_pages, 1)} ({page.total_elements} total)")


def _format_execution(e) -> str:
    transition = ""
    if e.previous_status and e.new_status:
        transition = f" {e.previous_status.value} -> {e.new_status.value}"
    return (
        f"{e.executed_at:%Y-%m-%d %H:%M:%S} rule={e.rule_id} card={e.card_id} "
        f"{e.status.value}{transition}: {e.message} ({e.execution_time_ms}ms)"
    )


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Stock Kanban CLI")
    parser.add_argument("--db", default="data/kanban.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--username", help="Username")
    add_user_parser.add_argument("--email", help="User email")
    add_user_parser.add_argument("--discord", help="Discord webhook URL")

    user_subparsers.add_parser("list", help="List users")

    # Card commands
    card_parser = subparsers.add_parser("card", help="Kanban card management")
    card_subparsers = card_parser.add_subparsers(dest="action")

    add_card_parser = card_subparsers.add_parser("add", help="Add card")
    add_card_parser.add_argument("--user", type=int, required=True, help="User ID")
    add_card_parser.add_argument("--code", required=True, help="Stock code")
    add_card_parser.add_argument("--name", default="", help="Stock name")
    add_card_parser.add_argument("--status", choices=STATUS_CHOICES, default="WATCH")

    list_card_parser = card_subparsers.add_parser("list", help="List a user's cards")
    list_card_parser.add_argument("--user", type=int, required=True, help="User ID")

    move_card_parser = card_subparsers.add_parser("move", help="Move card to a column")
    move_card_parser.add_argument("--card", type=int, required=True, help="Card ID")
    move_card_parser.add_argument("--status", choices=STATUS_CHOICES, required=True)

    # Rules commands
    rules_parser = subparsers.add_parser("rules", help="Rules management")
    rules_subparsers = rules_parser.add_subparsers(dest="action")

    add_rule_parser = rules_subparsers.add_parser("add", help="Add rule")
    add_rule_parser.add_argument("--user", type=int, required=True, help="User ID")
    add_rule_parser.add_argument("--name", required=True, help="Rule name")
    add_rule_parser.add_argument("--condition", required=True, help="Condition expression")
    add_rule_parser.add_argument("--target", choices=STATUS_CHOICES, required=True)
    add_rule_parser.add_argument(
        "--trigger", choices=[t.value for t in TriggerEvent], default="PRICE_CHANGE"
    )
    add_rule_parser.add_argument("--cooldown", type=int, default=3600, help="Seconds")
    add_rule_parser.add_argument("--priority", type=int, default=5)
    add_rule_parser.add_argument("--template", help="Notification message template")
    add_rule_parser.add_argument("--params", help="JSON parameters")
    add_rule_parser.add_argument("--no-notify", action="store_true")

    list_rules_parser = rules_subparsers.add_parser("list", help="List a user's rules")
    list_rules_parser.add_argument("--user", type=int, required=True, help="User ID")
    list_rules_parser.add_argument("--page", type=int, default=0)

    rules_subparsers.add_parser("templates", help="Show built-in rule templates")

    from_template_parser = rules_subparsers.add_parser(
        "from-template", help="Create rule from a template"
    )
    from_template_parser.add_argument("--user", type=int, required=True, help="User ID")
    from_template_parser.add_argument("--name", required=True, help="Template name")
    from_template_parser.add_argument("--params", help="JSON parameters")

    validate_parser = rules_subparsers.add_parser("validate", help="Check an expression")
    validate_parser.add_argument("expression")

    for action in ("enable", "disable"):
        toggle_parser = rules_subparsers.add_parser(action, help=f"{action.title()} rule")
        toggle_parser.add_argument("--user", type=int, required=True, help="User ID")
        toggle_parser.add_argument("--rule", type=int, required=True, help="Rule ID")

    # Price commands
    prices_parser = subparsers.add_parser("prices", help="Price data")
    prices_subparsers = prices_parser.add_subparsers(dest="action")
    sync_parser = prices_subparsers.add_parser("sync", help="Sync prices from Yahoo Finance")
    sync_parser.add_argument("--codes", help="Comma-separated stock codes")

    # Indicator commands
    indicators_parser = subparsers.add_parser("indicators", help="Technical indicators")
    indicators_subparsers = indicators_parser.add_subparsers(dest="action")
    calc_parser = indicators_subparsers.add_parser("calc", help="Recompute indicators")
    calc_parser.add_argument("--codes", help="Comma-separated stock codes")

    # Execution history commands
    executions_parser = subparsers.add_parser("executions", help="Execution history")
    executions_subparsers = executions_parser.add_subparsers(dest="action")
    by_rule_parser = executions_subparsers.add_parser("rule", help="History of a rule")
    by_rule_parser.add_argument("id", type=int)
    by_rule_parser.add_argument("--page", type=int, default=0)
    by_card_parser = executions_subparsers.add_parser("card", help="History of a card")
    by_card_parser.add_argument("id", type=int)
    by_card_parser.add_argument("--page", type=int, default=0)

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("migrate", help="Create missing tables")

    # Health check
    health_parser = subparsers.add_parser("healthcheck", help="Send status to Discord")
    health_parser.add_argument("--webhook", help="Discord webhook URL")

    args = parser.parse_args()

    # Initialize database
    db = Database(args.db)
    db.initialize()

    try:
        _run(db, args)
    except (KanbanError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()


def _split_codes(raw: Optional[str]) -> Optional[list[str]]:
    if not raw:
        return None
    return [c.strip().upper() for c in raw.split(",") if c.strip()]


def _run(db: Database, args: argparse.Namespace) -> None:
    rule_service = RuleService(RuleRepository(db), UserRepository(db))

    # Handle commands
    if args.command == "user":
        if args.action == "add":
            user = add_user(
                db, username=args.username, email=args.email, discord_webhook=args.discord
            )
            print(f"Created user with ID: {user.id}")
        elif args.action == "list":
            for user in UserRepository(db).list_all():
                print(f"ID: {user.id}, Username: {user.username}, Email: {user.email}")

    elif args.command == "card":
        if args.action == "add":
            card = add_card(db, args.user, args.code, args.name, CardStatus(args.status))
            print(f"Created card with ID: {card.id}")
        elif args.action == "list":
            for card in CardRepository(db).find_by_owner(args.user):
                print(f"ID: {card.id}, {card.stock_code} {card.stock_name} [{card.status.display_name}]")
        elif args.action == "move":
            card = move_card(db, args.card, CardStatus(args.status))
            print(f"Moved card {card.id} to {card.status.display_name}")

    elif args.command == "rules":
        if args.action == "add":
            rule = rule_service.create_rule(
                args.user,
                name=args.name,
                condition_expression=args.condition,
                target_status=args.target,
                trigger_event=args.trigger,
                cooldown_seconds=args.cooldown,
                priority=args.priority,
                notification_template=args.template,
                send_notification=not args.no_notify,
                parameters=json.loads(args.params) if args.params else {},
            )
            print(f"Created rule with ID: {rule.id}")
        elif args.action == "list":
            page = rule_service.get_user_rules(args.user, page=args.page)
            _print_page(
                page,
                lambda r: (
                    f"ID: {r.id}, [P{r.priority}] {r.name}: {r.condition_expression} "
                    f"-> {r.target_status.value} "
                    f"({'enabled' if r.enabled else 'disabled'}, triggered {r.trigger_count}x)"
                ),
            )
        elif args.action == "templates":
            for t in rule_service.get_default_templates():
                print(f"{t.name}: {t.condition_expression} -> {t.target_status.value}")
                print(f"    {t.description}")
        elif args.action == "from-template":
            rule = rule_service.create_rule_from_template(
                args.user, args.name, json.loads(args.params) if args.params else None
            )
            print(f"Created rule with ID: {rule.id} ({rule.name})")
        elif args.action == "validate":
            error = ConditionEvaluator().check_expression(args.expression)
            if error:
                print(f"Invalid: {error}")
                sys.exit(1)
            print("Valid")
        elif args.action in ("enable", "disable"):
            rule = rule_service.toggle_rule(args.user, args.rule, args.action == "enable")
            print(f"Rule {rule.id} {'enabled' if rule.enabled else 'disabled'}")

    elif args.command == "prices":
        if args.action == "sync":
            result = sync_prices(db, _split_codes(args.codes))
            print(f"Synced: {result['synced']}")
            if result["failed"]:
                print(f"Failed: {result['failed']}")

    elif args.command == "indicators":
        if args.action == "calc":
            result = calculate_indicators(db, _split_codes(args.codes))
            print(f"Calculated: {result['calculated']}")
            if result["insufficient"]:
                print(f"Insufficient data: {result['insufficient']}")

    elif args.command == "executions":
        repo = ExecutionRepository(db)
        if args.action == "rule":
            if RuleRepository(db).get_by_id(args.id) is None:
                raise NotFoundError(f"Rule not found: {args.id}")
            _print_page(repo.find_by_rule(args.id, page=args.page), _format_execution)
        elif args.action == "card":
            if CardRepository(db).get_by_id(args.id) is None:
                raise NotFoundError(f"Card not found: {args.id}")
            _print_page(repo.find_by_card(args.id, page=args.page), _format_execution)

    elif args.command == "db":
        if args.action == "migrate":
            db.initialize()
            print("Migrations applied")

    elif args.command == "healthcheck":
        from kanban.healthcheck import run_healthcheck

        run_healthcheck(db, args.webhook)


if __name__ == "__main__":
    main()
