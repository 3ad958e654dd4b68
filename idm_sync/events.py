"""
Audit events emitted by the reconciliation engine.

Every state-changing operation in a downstream application produces one
AuditEvent. Connectors receive the sink explicitly; storage and formatting
of the events is up to the sink implementation.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional

PRINCIPAL = 'idm-sync'

logger = logging.getLogger(__name__)


class EventType(Enum):
    USER_CREATED = 'USER_CREATED'
    USER_BLOCKED = 'USER_BLOCKED'
    USER_UNBLOCKED = 'USER_UNBLOCKED'
    USER_ADDED = 'USER_ADDED'
    USER_UPDATED = 'USER_UPDATED'
    USER_REMOVED = 'USER_REMOVED'
    COMPOSITE_CREATED = 'COMPOSITE_CREATED'


class AuditEvent:
    """One state-changing operation performed in an application."""

    def __init__(self, type: EventType, application: str, data: Optional[Dict[str, str]] = None,
                 principal: str = PRINCIPAL, timestamp: Optional[datetime] = None):
        self.type = type
        self.application = application
        self.data = data if data is not None else {}
        self.principal = principal
        self.timestamp = timestamp or datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        data = {'application': self.application}
        data.update(self.data)
        return {
            'principal': self.principal,
            'type': self.type.value,
            'timestamp': self.timestamp.isoformat(),
            'data': data,
        }

    def __str__(self):
        fields = ' '.join(f"{key}={value}" for key, value in self.data.items())
        return f"{self.type.value} application={self.application} {fields}".rstrip()

    def __repr__(self):
        return f"AuditEvent({self.type.value}, {self.application!r}, {self.data!r})"


class AuditSink(ABC):
    """Receives audit events."""

    @abstractmethod
    def publish(self, event: AuditEvent):
        pass


class InMemoryAuditSink(AuditSink):
    """Keeps the most recent events in memory."""

    def __init__(self, capacity: int = 1000):
        self._events = deque(maxlen=capacity if capacity and capacity > 0 else None)

    def publish(self, event: AuditEvent):
        self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        return list(self._events)

    def of_type(self, event_type: EventType) -> List[AuditEvent]:
        return [event for event in self._events if event.type == event_type]

    def clear(self):
        self._events.clear()

    def __len__(self):
        return len(self._events)


class LoggingAuditSink(AuditSink):
    """Writes audit events to the 'audit' logger."""

    def __init__(self, logger_name: str = 'audit'):
        self.logger = logging.getLogger(logger_name)

    def publish(self, event: AuditEvent):
        self.logger.info(f"Audit event by {event.principal}: {event}")


class CompositeAuditSink(AuditSink):
    """Fans out events to several sinks."""

    def __init__(self, sinks: List[AuditSink]):
        self.sinks = list(sinks)

    def publish(self, event: AuditEvent):
        for sink in self.sinks:
            sink.publish(event)


def _user_fields(user) -> Dict[str, str]:
    fields = {'username': user.username}
    user_id = getattr(user, 'id', None)
    if user_id is not None:
        fields['userId'] = str(user_id)
    return fields


def _composite_fields(composite_type: str, unit) -> Dict[str, str]:
    return {
        'compositeType': composite_type,
        'compositeId': str(unit.id),
        'compositeName': unit.name,
    }


def user_created(application: str, user, idp_user_id: Optional[str] = None) -> AuditEvent:
    data = _user_fields(user)
    if idp_user_id:
        data['idpUserId'] = idp_user_id
    return AuditEvent(EventType.USER_CREATED, application, data)


def user_blocked(application: str, user) -> AuditEvent:
    return AuditEvent(EventType.USER_BLOCKED, application, _user_fields(user))


def user_unblocked(application: str, user) -> AuditEvent:
    return AuditEvent(EventType.USER_UNBLOCKED, application, _user_fields(user))


def user_added(application: str, composite_type: str, unit, user, role) -> AuditEvent:
    data = _user_fields(user)
    data.update(_composite_fields(composite_type, unit))
    data['role'] = getattr(role, 'name', str(role))
    return AuditEvent(EventType.USER_ADDED, application, data)


def user_updated(application: str, composite_type: str, unit, user, role) -> AuditEvent:
    data = _user_fields(user)
    data.update(_composite_fields(composite_type, unit))
    data['role'] = getattr(role, 'name', str(role))
    return AuditEvent(EventType.USER_UPDATED, application, data)


def user_removed(application: str, composite_type: str, unit, user) -> AuditEvent:
    data = _user_fields(user)
    data.update(_composite_fields(composite_type, unit))
    return AuditEvent(EventType.USER_REMOVED, application, data)


def composite_created(application: str, composite_type: str, unit) -> AuditEvent:
    return AuditEvent(EventType.COMPOSITE_CREATED, application, _composite_fields(composite_type, unit))
