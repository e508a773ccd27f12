"""
ORM-backed persistence gateway used by the allocation coordinator.

One :class:`Repository` per entity gives typed lookups that raise
:class:`~allocation.exceptions.NotFound` and, inside a transaction, lock
the row with ``SELECT ... FOR UPDATE``.  :meth:`DjangoPersistenceGateway.atomic`
is the only transaction boundary the coordinator uses; it translates
database failures into the allocation error taxonomy.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterable, Optional

from django.db import IntegrityError, InterfaceError, OperationalError, transaction

from allocation.exceptions import Conflict, NotFound, TransientPersistenceError
from allocation.models import (
    Compatibility,
    Institution,
    Organ,
    Receiver,
    StatusTransition,
    TransplantProcedure,
    Transportation,
)

logger = logging.getLogger(__name__)


class Repository:
    def __init__(self, model, entity: str, *, using: Optional[str] = None):
        self.model = model
        self.entity = entity
        self.using = using

    def _queryset(self):
        return self.model.objects.using(self.using) if self.using else self.model.objects.all()

    def get(self, pk, *, for_update: bool = False):
        """Load one row; ``for_update`` must only be used inside :meth:`DjangoPersistenceGateway.atomic`."""
        qs = self._queryset()
        if for_update:
            qs = qs.select_for_update()
        obj = qs.filter(pk=pk).first()
        if obj is None:
            raise NotFound(self.entity, pk)
        return obj

    def filter(self, *args, **kwargs):
        return self._queryset().filter(*args, **kwargs)

    def create(self, **fields):
        return self._queryset().create(**fields)

    def save(self, instance, fields: Optional[Iterable[str]] = None) -> None:
        if fields is None:
            instance.save(using=self.using)
            return
        update_fields = list(dict.fromkeys(fields))
        if any(f.name == 'updated_at' for f in self.model._meta.concrete_fields):
            update_fields.append('updated_at')
        instance.save(using=self.using, update_fields=update_fields)


class DjangoPersistenceGateway:
    def __init__(self, using: Optional[str] = None):
        self.using = using
        self.organs = Repository(Organ, 'Organ', using=using)
        self.receivers = Repository(Receiver, 'Receiver', using=using)
        self.compatibilities = Repository(Compatibility, 'Compatibility', using=using)
        self.transports = Repository(Transportation, 'Transportation', using=using)
        self.procedures = Repository(TransplantProcedure, 'TransplantProcedure', using=using)
        self.institutions = Repository(Institution, 'Institution', using=using)
        self._repositories = {
            Organ: self.organs,
            Receiver: self.receivers,
            Compatibility: self.compatibilities,
            Transportation: self.transports,
            TransplantProcedure: self.procedures,
            Institution: self.institutions,
        }

    @contextmanager
    def atomic(self):
        """Open a transaction; roll back and translate the error on failure."""
        try:
            with transaction.atomic(using=self.using):
                yield
        except IntegrityError as exc:
            logger.warning('Integrity violation rolled back: %s', exc)
            raise Conflict(f'Operation violates a uniqueness rule: {exc}') from exc
        except (OperationalError, InterfaceError) as exc:
            logger.warning('Transient database failure rolled back: %s', exc)
            raise TransientPersistenceError() from exc

    def with_transaction(self, fn, *args, **kwargs):
        with self.atomic():
            return fn(*args, **kwargs)

    def on_commit(self, callback) -> None:
        """Run ``callback`` once the outermost transaction commits; dropped on rollback."""
        transaction.on_commit(callback, using=self.using)

    def save(self, instance, fields: Optional[Iterable[str]] = None) -> None:
        self._repositories[type(instance)].save(instance, fields=fields)

    def record_transition(self, entity: str, entity_id, from_status, to_status, reason: str = '') -> StatusTransition:
        qs = StatusTransition.objects.using(self.using) if self.using else StatusTransition.objects
        return qs.create(
            entity=entity,
            entity_id=entity_id,
            from_status=from_status,
            to_status=to_status,
            reason=(reason or '')[:255],
        )
