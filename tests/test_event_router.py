"""
Tests for payhook/services/event_router.py - closed set of Stripe event types.
"""
from unittest.mock import AsyncMock

import pytest

from payhook.errors import HandlerFailure, UnroutableEventType
from payhook.services.event_router import HANDLERS, EventRouter, StripeEventType


class TestHandlerTable:
    def test_every_type_has_a_handler(self):
        assert set(HANDLERS) == set(StripeEventType)

    @pytest.mark.parametrize("event_type", [t.value for t in StripeEventType])
    def test_resolve_known_types(self, ctx, event_type):
        assert EventRouter(ctx).resolve(event_type) is HANDLERS[StripeEventType(event_type)]

    @pytest.mark.parametrize("event_type", ["customer.created", "invoice.created", "", "payout.updated"])
    def test_resolve_unknown_types(self, ctx, event_type):
        with pytest.raises(UnroutableEventType) as exc_info:
            EventRouter(ctx).resolve(event_type)
        assert exc_info.value.event_type == event_type


class TestRoute:
    async def test_runs_handler_with_context(self, ctx):
        handler = AsyncMock()
        router = EventRouter(ctx, handlers={StripeEventType.PAYOUT_PAID: handler})
        event = {"id": "evt_1", "type": "payout.paid", "data": {"object": {}}}

        assert await router.route(event) is True
        handler.assert_awaited_once_with(ctx, event)

    async def test_unroutable_is_acknowledged(self, ctx):
        assert await EventRouter(ctx).route({"id": "evt_1", "type": "customer.created"}) is False

    async def test_known_type_missing_from_table_is_unroutable(self, ctx):
        router = EventRouter(ctx, handlers={})
        assert await router.route({"id": "evt_1", "type": "payout.paid"}) is False

    async def test_handler_error_wrapped(self, ctx):
        cause = RuntimeError("db exploded")
        router = EventRouter(ctx, handlers={StripeEventType.PAYOUT_PAID: AsyncMock(side_effect=cause)})

        with pytest.raises(HandlerFailure) as exc_info:
            await router.route({"id": "evt_1", "type": "payout.paid"})
        assert exc_info.value.cause is cause
        assert exc_info.value.stripe_event_id == "evt_1"
        assert exc_info.value.event_type == "payout.paid"
