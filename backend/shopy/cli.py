import click

from .payments import PaymentProviderError
from .payments.konnect import check_konnect_payment_status
from .payments.paymee import check_paymee_payment_status
from .payments.polling import DEFAULT_MAX_POLLS, DEFAULT_POLL_INTERVAL_SECONDS, await_payment
from .routes.orders import confirm_order_payment
from .seed import ensure_indexes, seed_defaults

POLLABLE_PROVIDERS = ("paymee", "konnect")


def build_status_checker(app, db, provider: str):
    """Return a callable that fetches the provider status dict for a token."""
    config = app.extensions["payment_config"].get_provider_config(provider)
    if provider == "paymee":
        return lambda token: check_paymee_payment_status(config, token)
    return lambda token: check_konnect_payment_status(
        db, config, token, demo_mode=app.config["PAYMENT_DEMO_MODE"]
    )


def register_cli(app, db):
    @app.cli.command("seed")
    def seed_command():
        """Create indexes and default taxes, payment methods and currency."""
        ensure_indexes(db, app.logger)
        seed_defaults(db, app.logger)
        click.echo("Seeding complete.")

    @app.cli.command("await-payment")
    @click.argument("provider", type=click.Choice(POLLABLE_PROVIDERS))
    @click.argument("token")
    @click.option("--interval", default=DEFAULT_POLL_INTERVAL_SECONDS, show_default=True, type=float)
    @click.option("--max-polls", default=DEFAULT_MAX_POLLS, show_default=True, type=int)
    def await_payment_command(provider, token, interval, max_polls):
        """Poll a hosted payment until it is paid or the poll limit is reached."""
        check_status = build_status_checker(app, db, provider)
        last_status = {}

        def is_paid(payment_token):
            last_status.update(check_status(payment_token))
            return last_status["payment_status"]

        try:
            result = await_payment(is_paid, token, interval=interval, max_polls=max_polls)
        except PaymentProviderError as exc:
            raise click.ClickException(exc.message)

        if result == "paid":
            order_document, error = confirm_order_payment(
                db, {"payment.token": token}, provider, last_status.get("amount")
            )
            if error:
                raise click.ClickException(f"Payment {token} is paid but {error}.")
            if order_document:
                click.echo(f"Payment {token} is paid; order {order_document['_id']} updated.")
                return
        click.echo(f"Payment {token} is {result}.")
