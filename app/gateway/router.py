"""Backend Router — static mapping from requested model name to backend, public name and price."""

from __future__ import annotations

from app.gateway.types import Backend, BackendRoute, PricingTier

FLASH_ROUTE = BackendRoute(Backend.FLASH, "salesmanchatbot-flash", PricingTier.FLASH)
LITE_ROUTE = BackendRoute(Backend.LITE, "salesmanchatbot-lite", PricingTier.LITE)
PRO_ROUTE = BackendRoute(Backend.PRO, "salesmanchatbot-pro", PricingTier.PRO)

DEFAULT_ROUTE = PRO_ROUTE

MODEL_ALIASES: dict[str, BackendRoute] = {
    "salesmanchatbot-flash": FLASH_ROUTE,
    "salesmanchatbot-2.0-lite": FLASH_ROUTE,
    "flash": FLASH_ROUTE,
    "flash-alias": FLASH_ROUTE,
    "salesmanchatbot-lite": LITE_ROUTE,
    "salesmanchatbot-2.0-pro": LITE_ROUTE,  # historical name kept for existing integrations
    "lite": LITE_ROUTE,
    "salesmanchatbot-pro": PRO_ROUTE,
    "salesmanchatbot": PRO_ROUTE,
    "pro": PRO_ROUTE,
}

PUBLIC_ROUTES: tuple[BackendRoute, ...] = (PRO_ROUTE, FLASH_ROUTE, LITE_ROUTE)


def route(requested_model: str | None) -> BackendRoute:
    """Resolve a requested model name. Unknown or empty names go to the pro backend."""
    if not requested_model:
        return DEFAULT_ROUTE
    return MODEL_ALIASES.get(requested_model.strip().lower(), DEFAULT_ROUTE)
