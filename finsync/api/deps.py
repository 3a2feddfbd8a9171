from __future__ import annotations

from typing import cast

from fastapi import Depends

from finsync.core.config import Settings, get_settings
from finsync.services.gateway import ProviderGateway
from finsync.services.qbo_gateway import QuickBooksGateway
from finsync.services.stripe_gateway import StripeGateway


def get_gateways(settings: Settings = Depends(get_settings)) -> dict[str, ProviderGateway]:
    return {
        "qbo": QuickBooksGateway(settings),
        "stripe": StripeGateway(settings),
    }


def get_stripe_gateway(
    gateways: dict[str, ProviderGateway] = Depends(get_gateways),
) -> StripeGateway:
    return cast(StripeGateway, gateways["stripe"])
