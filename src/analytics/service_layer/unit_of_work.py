# pylint: disable=attribute-defined-outside-init
from __future__ import annotations
import abc
from typing import List, Optional
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session


import config
from analytics.adapters import repository
from analytics.adapters.alerts import AbstractAlertSink, LoggingAlertSink
from analytics.adapters.cache import AbstractViewCache
from analytics.adapters.source_of_truth import AbstractSourceOfTruth, EventLogSourceOfTruth
from shared.domain.commands import Event


class AbstractUnitOfWork(abc.ABC):
    read_models: repository.AbstractReadModelRepository
    event_log: repository.AbstractEventLog
    reports: repository.AbstractReportRepository
    source: AbstractSourceOfTruth
    cache: Optional[AbstractViewCache] = None
    alerts: AbstractAlertSink

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        self._commit()
        # internal events only leave the unit of work once the write is durable
        pending = getattr(self, "_pending_events", [])
        for entity in list(self.read_models.seen) + list(self.reports.seen):
            while entity.events:
                pending.append(entity.events.pop(0))
        self._pending_events = pending

    def collect_new_events(self):
        pending = getattr(self, "_pending_events", [])  # type: List[Event]
        while pending:
            yield pending.pop(0)

    @abc.abstractmethod
    def _commit(self):
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError


DEFAULT_SESSION_FACTORY = sessionmaker(
    bind=create_engine(
        config.get_postgres_uri(),
        isolation_level="READ COMMITTED",
    )
)

class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory=DEFAULT_SESSION_FACTORY, source=None, cache=None, alerts=None):
        self.session_factory = session_factory
        self.source_impl = source
        self.cache = cache
        self.alerts = alerts or LoggingAlertSink()

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.read_models = repository.SqlAlchemyReadModelRepository(self.session)
        self.event_log = repository.SqlAlchemyEventLog(self.session)
        self.reports = repository.SqlAlchemyReportRepository(self.session)
        self.source = self.source_impl or EventLogSourceOfTruth(self.event_log)
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def _commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
