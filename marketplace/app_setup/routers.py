"""
Registre central des routers.
- API v1: cart, orders (dont endpoints internes), payments (internes + webhook), payouts vendeurs, onboarding Stripe Connect
- Admin: ledger des webhooks en échec
- Health
"""
from fastapi import FastAPI
from marketplace.cart import views as cart_views
from marketplace.orders import views as orders_views
from marketplace.payments import views as payments_views
from marketplace.payouts import views as payouts_views
from marketplace.vendors import views as vendors_views
from marketplace.webhooks import views as webhook_views
from marketplace.webhooks import admin_views as webhook_admin_views
from marketplace.health.router import router as health_router

def register_routers(app: FastAPI) -> None:
    """L'ordre n'a pas d'impact sauf conflits de chemins (évités par préfixes)."""
    # API v1
    app.include_router(cart_views.router)
    app.include_router(orders_views.router)
    app.include_router(payments_views.router)
    app.include_router(webhook_views.router)
    app.include_router(payouts_views.router)
    app.include_router(vendors_views.router)
    # Admin
    app.include_router(webhook_admin_views.router)
    # Health & monitoring
    app.include_router(health_router)
