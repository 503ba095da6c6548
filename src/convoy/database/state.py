"""Run leases that keep periodic passes single-instance.

A lease row per run name records who holds it and until when. Acquiring a
live lease held by someone else fails; an expired lease is taken over.
"""

import os
import socket
import uuid
from collections.abc import Generator
from contextlib import contextmanager

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from convoy.core.errors import LeaseHeldError
from convoy.database.models import RunLease
from convoy.utils.clock import Clock, now_ms

logger = structlog.get_logger(__name__)

FLEET_CYCLE_LEASE = "fleet_cycle"
AUTOSCALER_LEASE = "autoscaler"


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class LeaseManager:
    """Acquires and releases named run leases in the entity store."""

    def __init__(
        self,
        session_factory: sessionmaker,
        ttl_seconds: int = 120,
        holder: str | None = None,
        clock: Clock = now_ms,
    ):
        """Initialize lease manager.

        Args:
            session_factory: Factory producing sessions on the entity store
            ttl_seconds: Lease lifetime
            holder: Label recorded with held leases (default: host:pid)
            clock: Millisecond clock
        """
        self.session_factory = session_factory
        self.ttl_ms = ttl_seconds * 1000
        self.holder = holder or default_holder()
        self.clock = clock

    def acquire(self, name: str) -> str:
        """Acquire a lease.

        Returns:
            Token identifying this holding of the lease

        Raises:
            LeaseHeldError: If another holder has a live lease
        """
        now = self.clock()
        token = uuid.uuid4().hex

        with self.session_factory() as session:
            lease = session.get(RunLease, name)

            if lease is not None and lease.expires_at > now:
                logger.warning("lease_held", lease=name, holder=lease.holder, expires_at=lease.expires_at)
                raise LeaseHeldError(name, lease.holder, lease.expires_at)

            values = {
                "token": token,
                "holder": self.holder,
                "acquired_at": now,
                "expires_at": now + self.ttl_ms,
            }

            if lease is None:
                session.add(RunLease(name=name, **values))
                try:
                    session.commit()
                except IntegrityError:
                    # Another instance inserted the row first
                    session.rollback()
                    raise self._held(session, name, now)
            else:
                # Compare-and-set on the expired token so two takeovers cannot both win
                logger.info("lease_expired_takeover", lease=name, previous_holder=lease.holder)
                updated = (
                    session.query(RunLease)
                    .filter_by(name=name, token=lease.token)
                    .update(values, synchronize_session=False)
                )
                session.commit()
                if updated != 1:
                    raise self._held(session, name, now)

        logger.debug("lease_acquired", lease=name, holder=self.holder)
        return token

    def _held(self, session: Session, name: str, now: int) -> LeaseHeldError:
        session.expire_all()
        current = session.get(RunLease, name)
        if current is None:
            return LeaseHeldError(name, None, now)
        return LeaseHeldError(name, current.holder, current.expires_at)

    def renew(self, name: str, token: str) -> bool:
        """Push a held lease's expiry out by one TTL.

        Returns:
            False if ``token`` no longer holds the lease (it expired and was taken over)
        """
        now = self.clock()
        with self.session_factory() as session:
            updated = (
                session.query(RunLease)
                .filter_by(name=name, token=token)
                .update({"expires_at": now + self.ttl_ms}, synchronize_session=False)
            )
            session.commit()

        if not updated:
            logger.warning("lease_lost", lease=name, holder=self.holder)
        return bool(updated)

    def release(self, name: str, token: str) -> bool:
        """Release a lease if ``token`` still holds it."""
        with self.session_factory() as session:
            deleted = session.query(RunLease).filter_by(name=name, token=token).delete()
            session.commit()

        if deleted:
            logger.debug("lease_released", lease=name)
        else:
            logger.warning("lease_release_skipped", lease=name)
        return bool(deleted)

    @contextmanager
    def hold(self, name: str) -> Generator[str, None, None]:
        """Hold a lease for the duration of a block."""
        token = self.acquire(name)
        try:
            yield token
        finally:
            self.release(name, token)
