"""
Outbound notification of allocation state changes.

The coordinator hands events to an :class:`EventPublisher` only after
the transaction that produced them has committed.  Delivery is
fire-and-forget: the coordinator never waits for subscribers and a
failing publisher does not undo the state change.
"""
from __future__ import annotations

import logging

from asgiref.sync import async_to_sync
from channels.layers import DEFAULT_CHANNEL_LAYER, get_channel_layer
from django.conf import settings

logger = logging.getLogger(__name__)

COMPATIBILITY_FOUND = 'compatibility.found'
COMPATIBILITY_REJECTED = 'compatibility.rejected'
MATCH_CONFIRMED = 'match.confirmed'
TRANSPORT_SCHEDULED = 'transport.scheduled'
TRANSPORT_STATUS_CHANGED = 'transport.status.changed'
PROCEDURE_SCHEDULED = 'procedure.scheduled'
PROCEDURE_STARTED = 'procedure.started'
PROCEDURE_COMPLETED = 'procedure.completed'
PROCEDURE_CANCELLED = 'procedure.cancelled'
ORGAN_EXPIRED = 'organ.expired'
RECEIVER_STATUS_CHANGED = 'receiver.status.changed'


class EventPublisher:
    def publish(self, event_name: str, payload: dict) -> None:
        raise NotImplementedError


class ChannelLayerPublisher(EventPublisher):
    """Send events to a channel-layer group for WebSocket consumers to fan out."""
    message_type = 'allocation.event'

    def __init__(self, group: str | None = None, layer_alias: str = DEFAULT_CHANNEL_LAYER):
        self.group = group or settings.ALLOCATION_EVENTS_GROUP
        self.layer_alias = layer_alias

    def publish(self, event_name: str, payload: dict) -> None:
        channel_layer = get_channel_layer(self.layer_alias)
        if channel_layer is None:
            logger.debug('No channel layer configured; dropping %s', event_name)
            return
        async_to_sync(channel_layer.group_send)(
            self.group,
            {'type': self.message_type, 'event': event_name, 'payload': payload},
        )


class LoggingPublisher(EventPublisher):
    """Used when event delivery is switched off; keeps a trace in the logs."""

    def publish(self, event_name: str, payload: dict) -> None:
        logger.info('event %s %s', event_name, payload)


def default_publisher() -> EventPublisher:
    if settings.ALLOCATION_EVENTS_ENABLED:
        return ChannelLayerPublisher()
    return LoggingPublisher()
