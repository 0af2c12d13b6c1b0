from .auth import register_auth_routes
from .orders import register_order_routes
from .payment_methods import register_payment_method_routes
from .payments import register_payment_routes
from .products import register_product_routes
from .reviews import register_review_routes
from .settings import register_settings_routes
from .system import register_system_routes
from .taxes import register_tax_routes
from .users import register_user_routes


def register_routes(app, db):
    register_system_routes(app, db)
    register_auth_routes(app, db)
    register_user_routes(app, db)
    register_product_routes(app, db)
    register_review_routes(app, db)
    register_order_routes(app, db)
    register_tax_routes(app, db)
    register_payment_method_routes(app, db)
    register_payment_routes(app, db)
    register_settings_routes(app, db)
