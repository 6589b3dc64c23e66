import json

import click
from flask.cli import with_appcontext

from autoflow.billing import events
from autoflow.oauth import store, tokens
from autoflow.oauth.providers import PROVIDERS


@click.group()
def integrations():
    """OAuth integration ops."""

@integrations.command("status")
@click.option("--user-id", required=True)
@with_appcontext
def integrations_status(user_id):
    for name, status in store.statuses_for(user_id).items():
        if status["connected"]:
            click.echo(f"{name}: connected email={status.get('providerEmail') or '-'} since={status.get('connectedAt')}")
        else:
            click.echo(f"{name}: not connected")

@integrations.command("refresh")
@click.option("--user-id", required=True)
@click.option("--provider", type=click.Choice(sorted(PROVIDERS)), required=True)
@with_appcontext
def integrations_refresh(user_id, provider):
    if not PROVIDERS[provider].supports_refresh:
        raise click.ClickException(f"{provider} does not issue refresh tokens")
    if tokens.force_refresh(user_id, provider) is None:
        raise click.ClickException("Refresh failed; see logs")
    click.echo(f"Refreshed {provider} token for user {user_id}")

@click.group()
def billing():
    """Billing reconciliation ops."""

@billing.command("replay-event")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@with_appcontext
def billing_replay_event(path):
    """Apply a saved Stripe event JSON without signature verification."""
    with open(path, "r", encoding="utf-8") as fh:
        try:
            event = json.load(fh)
        except ValueError as exc:
            raise click.ClickException(f"Not JSON: {exc}")
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise click.ClickException("File does not hold a Stripe event")

    outcome = events.process_event(event)
    click.echo(f"{event['id']} ({event['type']}): {outcome.value}")

def register_cli(app):
    app.cli.add_command(integrations)
    app.cli.add_command(billing)
