from datetime import datetime

from pymongo.errors import PyMongoError

from .payments.config_service import default_config, encode_payment_config

DEFAULT_TAX_RATES = (0, 5, 10, 15, 20, 25)
DEFAULT_PAYMENT_METHODS = (
    {
        "name": "Adyen",
        "code": "adyen",
        "description": "Cards and wallets through Adyen Drop-in",
        "is_active": True,
    },
    {
        "name": "Paymee",
        "code": "paymee",
        "description": "Tunisian online payments through Paymee",
        "is_active": False,
    },
    {
        "name": "Konnect",
        "code": "konnect",
        "description": "Tunisian online payments through Konnect",
        "is_active": False,
    },
)
DEFAULT_CURRENCY = {
    "name": "US Dollar",
    "code": "USD",
    "symbol": "$",
    "exchange_rate": 1.0,
    "is_base": True,
    "is_active": True,
}


def ensure_indexes(db, logger) -> None:
    index_specs = (
        (db.users, "email", {"unique": True}),
        (db.taxes, "rate", {"unique": True}),
        (db.payment_methods, "code", {"unique": True}),
        (db.currencies, "code", {"unique": True}),
        (db.reviews, "product_id", {}),
        (db.orders, "user_id", {}),
        (db.orders, "payment.token", {}),
        (db.token_blocklist, "expires_at", {"expireAfterSeconds": 0}),
        (db.demo_payments, "expires_at", {"expireAfterSeconds": 0}),
    )
    for collection, field, options in index_specs:
        try:
            collection.create_index(field, **options)
        except PyMongoError as exc:
            logger.warning("Unable to ensure index on %s.%s: %s", collection.name, field, exc)


def ensure_default_taxes(db) -> int:
    if db.taxes.count_documents({}) > 0:
        return 0
    now = datetime.utcnow()
    db.taxes.insert_many(
        [
            {
                "name": f"{rate}%",
                "rate": float(rate),
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            }
            for rate in DEFAULT_TAX_RATES
        ]
    )
    return len(DEFAULT_TAX_RATES)


def ensure_default_payment_methods(db) -> int:
    if db.payment_methods.count_documents({}) > 0:
        return 0
    now = datetime.utcnow()
    db.payment_methods.insert_many(
        [
            dict(
                method,
                config=encode_payment_config(default_config(method["code"])),
                created_at=now,
                updated_at=now,
            )
            for method in DEFAULT_PAYMENT_METHODS
        ]
    )
    return len(DEFAULT_PAYMENT_METHODS)


def ensure_default_currency(db) -> int:
    if db.currencies.count_documents({}) > 0:
        return 0
    now = datetime.utcnow()
    db.currencies.insert_one(dict(DEFAULT_CURRENCY, created_at=now, updated_at=now))
    return 1


def seed_defaults(db, logger) -> None:
    created_taxes = ensure_default_taxes(db)
    created_methods = ensure_default_payment_methods(db)
    created_currencies = ensure_default_currency(db)
    if created_taxes or created_methods or created_currencies:
        logger.info(
            "Seeded %s taxes, %s payment methods and %s currencies",
            created_taxes,
            created_methods,
            created_currencies,
        )
