# pipeline/event_router.py
# ============================================================================
# BEAN CHECKOUT BACKEND — EVENT ROUTER
# ============================================================================
# Maps verified event types to handlers. Types nobody registered are
# acknowledged as "ignored" with no side effects.
# ============================================================================

from typing import Awaitable, Callable, Dict, List

import structlog

from schemas.commerce import PaymentEvent, WebhookAck

PaymentEventHandler = Callable[[PaymentEvent], Awaitable[WebhookAck]]


class WebhookRouter:
    """
    Webhook routing by event type.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: Dict[str, PaymentEventHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: PaymentEventHandler):
            if event_type in self._handlers:
                raise ValueError(f"Handler already registered for {event_type}")
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def dispatch(self, event: PaymentEvent) -> WebhookAck:
        handler = self._handlers.get(event.type)
        if handler is None:
            self._logger.info("webhook_ignored", event_type=event.type, event_id=event.event_id)
            return WebhookAck(status="ignored", event_id=event.event_id, event_type=event.type)
        return await handler(event)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())
