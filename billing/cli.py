"""Scheduled billing commands.

Run from cron (or any scheduler) once a day, e.g.::

    billing send-reminders
    billing process-renewals
"""

import argparse
import sys

import structlog

from billing.config import get_config
from billing.database import SessionLocal, init_db
from billing.errors import BillingError
from billing.gateway import PesapalClient
from billing.log import configure_logging
from billing.notifications import NotificationSubscriber, get_dispatcher
from billing.repository import OrderStore, SubscriptionStore
from billing.subscriptions import SubscriptionLifecycleManager

logger = structlog.get_logger(__name__)


def build_manager(db, client=None, config=None):
    config = config or get_config()
    client = client or PesapalClient(config)
    return SubscriptionLifecycleManager(
        SubscriptionStore(db), client, config, orders=OrderStore(db)
    )


def send_reminders(manager, subscriber):
    report = manager.check_and_send_reminders()
    subscriber.handle(report.events)
    print(f"Reminders sent: {report.three_day} (3 days), {report.seven_day} (7 days)")
    return 0


def process_renewals(manager, subscriber):
    report = manager.process_renewals()
    subscriber.handle(report.events)
    print(
        f"Renewed: {report.renewed}, payments initiated: {report.payments_initiated}, "
        f"pending: {report.pending}, failed: {report.failed}"
    )
    return 1 if report.failed else 0


def register_ipn(manager, subscriber):
    registration = manager.client.register_notification_endpoint()
    print(f"Registered IPN {registration.notification_id} -> {registration.url}")
    print("Set PESAPAL_NOTIFICATION_ID to this value.")
    return 0


COMMANDS = {
    "send-reminders": send_reminders,
    "process-renewals": process_renewals,
    "register-ipn": register_ipn,
}


def main(argv=None):
    parser = argparse.ArgumentParser(prog="billing")
    parser.add_argument("command", choices=sorted(COMMANDS))
    args = parser.parse_args(argv)

    configure_logging()
    init_db()

    db = SessionLocal()
    try:
        manager = build_manager(db)
        subscriber = NotificationSubscriber(get_dispatcher())
        return COMMANDS[args.command](manager, subscriber)
    except BillingError as e:
        logger.error("billing_command_failed", command=args.command, error=e.detail)
        print(f"Error: {e.detail}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
