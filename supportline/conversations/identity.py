"""Resolve contact evidence to exactly one customer.

Resolution is read-then-maybe-create. The ``(identifier_type, value)``
uniqueness constraint arbitrates concurrent first contacts: the loser of the
insert race rolls back and adopts the winner's customer. Callers that want
strict per-customer serialization additionally hold a keyed lock around
:meth:`IdentityResolver.resolve` (see :mod:`supportline.ingestion.locks`).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from uuid import UUID

from ..errors import IdentityConflictError, NormalizationError
from . import schemas
from .models import ContactEvidence, IdentifierType
from .repository import SupportRepository

logger = logging.getLogger(__name__)

# Lower is preferred. A verified e-mail beats a phone number, which beats an
# unverified e-mail; anonymous tokens only decide when nothing else matched.
_VERIFIED_EMAIL, _PHONE, _EMAIL, _ANON = range(4)


def _preference(identifier: schemas.IdentifierRecord) -> int:
    kind = identifier.identifier_type
    if kind == IdentifierType.EMAIL.value:
        return _VERIFIED_EMAIL if identifier.verified else _EMAIL
    if kind == IdentifierType.PHONE.value:
        return _PHONE
    return _ANON


class IdentityResolver:
    """Map :class:`ContactEvidence` to a stable customer id."""

    def __init__(
        self,
        repository: SupportRepository,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def resolve(self, evidence: ContactEvidence) -> UUID:
        """Return the customer id for ``evidence``, creating one if needed.

        Raises:
            NormalizationError: ``evidence`` carries no identifier at all.
            IdentityConflictError: a uniqueness conflict was reported but the
                conflicting identifier could not be re-read.
        """

        candidates = evidence.candidates()
        if not candidates:
            raise NormalizationError("no contact evidence supplied", field="contact")
        now = self._clock()

        matches = self._repo.find_identifiers([(kind.value, value) for kind, value, _ in candidates])
        if matches:
            chosen = min(matches, key=_preference)
            self._link_evidence(chosen.customer_id, evidence, matches, now)
            return chosen.customer_id

        kind, value, verified = candidates[0]
        customer = self._repo.create_customer(
            identifier_type=kind.value,
            value=value,
            verified=verified,
            email=evidence.email,
            phone=evidence.phone,
            display_name=evidence.display_name,
            seen_at=now,
        )
        if customer is None:
            # Lost the insert race: adopt whoever bound the identifier first.
            existing = self._repo.find_identifiers([(kind.value, value)])
            if not existing:
                raise IdentityConflictError(
                    f"{kind.value} identifier conflicted but could not be re-read",
                    identifier_type=kind.value,
                )
            customer_id = existing[0].customer_id
            self._link_evidence(customer_id, evidence, existing, now)
            return customer_id

        logger.info(
            "Created customer %s from %s evidence",
            customer.id,
            kind.value,
            extra={"event": "customer_created", "customer_id": str(customer.id)},
        )
        self._link_evidence(customer.id, evidence, [], now, skip={(kind.value, value)})
        return customer.id

    def _link_evidence(
        self,
        customer_id: UUID,
        evidence: ContactEvidence,
        known: list[schemas.IdentifierRecord],
        now: datetime,
        skip: set[tuple[str, str]] | None = None,
    ) -> None:
        """Bind unbound evidence to ``customer_id`` and refresh known rows.

        Evidence owned by another customer is reported and left alone; merging
        customers is an operator decision.
        """

        by_key = {(ident.identifier_type, ident.value): ident for ident in known}
        for kind, value, verified in evidence.candidates():
            key = (kind.value, value)
            if skip and key in skip:
                continue
            ident = by_key.get(key)
            if ident is None:
                ident = self._repo.bind_identifier(
                    customer_id, kind.value, value, verified=verified, seen_at=now
                )
            elif ident.customer_id == customer_id:
                self._repo.touch_identifier(ident.id, seen_at=now, verified=verified and not ident.verified)
            if ident.customer_id != customer_id:
                logger.warning(
                    "%s identifier belongs to customer %s, not %s; not merging",
                    kind.value,
                    ident.customer_id,
                    customer_id,
                    extra={
                        "event": "identity_inconsistency",
                        "customer_id": str(customer_id),
                        "other_customer_id": str(ident.customer_id),
                    },
                )


__all__ = ["IdentityResolver"]
