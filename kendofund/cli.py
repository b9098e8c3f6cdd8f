# kendofund/cli.py
import click
from flask import Flask
from flask.cli import AppGroup

from kendofund.extensions import tx_commit
from kendofund.money import from_minor

outbox_cli = AppGroup("outbox", help="Side-effect outbox (receipts, campaign credits).")
webhooks_cli = AppGroup("webhooks", help="Processed webhook event store.")
campaign_cli = AppGroup("campaign", help="Sponsorship campaign total.")


@outbox_cli.command("drain")
@click.option("--limit", default=100, show_default=True, help="Messages to attempt.")
@click.option("--max-attempts", type=int, default=None, help="Override OUTBOX_MAX_ATTEMPTS.")
def outbox_drain(limit: int, max_attempts):
    """Retry pending outbox messages, oldest first."""
    from kendofund.services import outbox

    counts = outbox.drain(limit=limit, max_attempts=max_attempts)
    click.echo(f"📬 seen={counts['seen']} sent={counts['sent']} failed={counts['failed']}")


@webhooks_cli.command("purge")
@click.option("--days", type=int, default=None, help="Retention in days (default WEBHOOK_RETENTION_DAYS).")
def webhooks_purge(days):
    """Delete event rows past the retention window."""
    from kendofund.services.donations import purge_expired

    removed = purge_expired(days)
    click.echo(f"🧹 removed {removed} expired webhook event(s)")


@webhooks_cli.command("replay")
@click.option("--limit", default=50, show_default=True)
def webhooks_replay(limit: int):
    """Re-run handlers for failed events and events stuck in processing."""
    from kendofund.services.donations import replay_failed

    counts = replay_failed(limit=limit)
    click.echo(f"🔁 seen={counts['seen']} processed={counts['processed']} failed={counts['failed']}")
    if counts["failed"]:
        raise SystemExit(1)


@campaign_cli.command("show")
def campaign_show():
    from kendofund.services import campaign as campaign_svc

    c = campaign_svc.get_or_create_campaign()
    s = campaign_svc.summary(c)
    click.echo(f"{c.name} ({c.slug})")
    click.echo(f"  received : GHS {s['amountReceived']['ghs']:,.2f} (USD {s['amountReceived']['usd']:,.2f})")
    click.echo(f"  goal     : GHS {s['goal']['ghs']:,.2f}")
    click.echo(f"  progress : {s['progressPercentage']}%")
    ledger = c.ledger_total_minor()
    if ledger != int(c.total_minor or 0):
        click.secho(f"  ⚠ ledger says GHS {from_minor(ledger):,.2f}; run `flask campaign recompute`", fg="yellow")


@campaign_cli.command("recompute")
def campaign_recompute():
    """Re-derive the cached total from base + adjustments + credited donations."""
    from kendofund.services import campaign as campaign_svc

    old, new = campaign_svc.recompute()
    tx_commit()
    if old == new:
        click.echo(f"✅ total unchanged: GHS {from_minor(new):,.2f}")
    else:
        click.secho(f"✏️  total GHS {from_minor(old):,.2f} → {from_minor(new):,.2f}", fg="green")


def register_cli(app: Flask) -> None:
    for group in (outbox_cli, webhooks_cli, campaign_cli):
        app.cli.add_command(group)
