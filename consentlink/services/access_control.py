"""
Access-control gate and patient consent management.

The gate answers one question, "has this patient granted this clinician
access, according to the ledger right now?", with a single ledger read. It
fails closed: an unreachable ledger, the wrong network or a malformed answer
all yield UNVERIFIED, never GRANTED. The last answer is written to an
advisory cache so the UI can restore its state after a reload, but nothing
privileged ever reads that cache.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from ..core.errors import InvalidTransition, LedgerUnavailable, PermissionDenied
from ..core.permissions import CAP_GRANT_ACCESS, CAP_REVOKE_ACCESS
from ..models.base import SessionLocal
from ..models.ledger import Role
from ..models.permission_cache import PermissionHint
from .ledger import LedgerAdapter, LedgerRevert

logger = logging.getLogger(__name__)


class AccessDecision(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNVERIFIED = "unverified"


class AdvisoryPermissionCache:
    """
    Remembers the last gate outcome per (patient, clinician) for one local user.
    Survives reloads; never consulted for privileged decisions.
    """

    def __init__(self, owner_id: str, session_factory: Callable = None):
        self.owner_id = owner_id
        self._session_factory = session_factory or SessionLocal

    def record(self, patient_id: str, clinician_id: str, verified: bool) -> None:
        db = self._session_factory()
        try:
            hint = (
                db.query(PermissionHint)
                .filter(
                    PermissionHint.owner_id == self.owner_id,
                    PermissionHint.patient_id == patient_id,
                    PermissionHint.clinician_id == clinician_id,
                )
                .first()
            )
            if hint is None:
                hint = PermissionHint(
                    owner_id=self.owner_id, patient_id=patient_id, clinician_id=clinician_id
                )
                db.add(hint)
            hint.verified = verified
            hint.checked_at = datetime.now(timezone.utc)
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.warning("Permission hint write failed for %s/%s: %s", patient_id, clinician_id, exc)
        finally:
            db.close()

    def hint(self, patient_id: str, clinician_id: str) -> Optional[bool]:
        """Last observed outcome, or None if never checked. Advisory only."""
        db = self._session_factory()
        try:
            hint = (
                db.query(PermissionHint)
                .filter(
                    PermissionHint.owner_id == self.owner_id,
                    PermissionHint.patient_id == patient_id,
                    PermissionHint.clinician_id == clinician_id,
                )
                .first()
            )
            return None if hint is None else bool(hint.verified)
        finally:
            db.close()

    def forget(self, patient_id: str, clinician_id: str) -> None:
        db = self._session_factory()
        try:
            db.query(PermissionHint).filter(
                PermissionHint.owner_id == self.owner_id,
                PermissionHint.patient_id == patient_id,
                PermissionHint.clinician_id == clinician_id,
            ).delete()
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.warning("Permission hint clear failed for %s/%s: %s", patient_id, clinician_id, exc)
        finally:
            db.close()


class AccessControlGate:
    def __init__(self, ledger: LedgerAdapter, cache: Optional[AdvisoryPermissionCache] = None):
        self.ledger = ledger
        self.cache = cache

    async def verify(self, clinician_id: str, patient_id: str) -> AccessDecision:
        """One ledger read. Pure apart from the advisory hint."""
        try:
            granted = await self.ledger.is_permission_granted(patient_id, clinician_id)
        except Exception as exc:
            logger.warning(
                "Access for %s on %s not verified, failing closed: %s", clinician_id, patient_id, exc
            )
            decision = AccessDecision.UNVERIFIED
        else:
            if not isinstance(granted, bool):
                logger.warning("Malformed permission answer for %s on %s: %r", clinician_id, patient_id, granted)
                decision = AccessDecision.UNVERIFIED
            else:
                decision = AccessDecision.GRANTED if granted else AccessDecision.DENIED
            logger.info("Access for %s on %s: %s", clinician_id, patient_id, decision.value)

        if self.cache is not None:
            self.cache.record(patient_id, clinician_id, decision == AccessDecision.GRANTED)
        return decision

    async def check_access(self, clinician_id: str, patient_id: str) -> bool:
        return await self.verify(clinician_id, patient_id) == AccessDecision.GRANTED

    async def require_access(self, clinician_id: str, patient_id: str) -> None:
        decision = await self.verify(clinician_id, patient_id)
        if decision == AccessDecision.UNVERIFIED:
            raise LedgerUnavailable(
                "Could not verify access on the blockchain. Check your connection and network, then retry."
            )
        if decision == AccessDecision.DENIED:
            raise PermissionDenied("Access Denied: Patient has not granted permission to this doctor.")


@dataclass
class ConsentChange:
    patient_id: str
    clinician_id: str
    granted: bool
    changed: bool  # False when the ledger already held the requested state


class ConsentService:
    """Patient-side grant and revoke. Each is two ledger writes: record view, then storage access."""

    def __init__(self, session, cache: Optional[AdvisoryPermissionCache] = None):
        self.session = session
        self.cache = cache

    async def grant_access(self, clinician_id: str) -> ConsentChange:
        patient = self.session.require(CAP_GRANT_ACCESS)
        clinician = await self.session.resolver.resolve(clinician_id, Role.CLINICIAN)
        ledger = self.session.ledger

        already = await ledger.is_permission_granted(patient.short_id, clinician.short_id)
        try:
            if not already:
                await ledger.grant_permission(
                    patient.short_id,
                    clinician.short_id,
                    patient.display_name or "Patient",
                    sender=self.session.wallet_address,
                )
            await ledger.grant_access_to_doctor(clinician.wallet_address, sender=self.session.wallet_address)
        except LedgerRevert as exc:
            raise InvalidTransition(f"Could not grant access: {exc.reason}") from exc
        finally:
            if self.cache is not None:
                self.cache.forget(patient.short_id, clinician.short_id)

        logger.info("%s granted access to %s (new=%s)", patient.short_id, clinician.short_id, not already)
        return ConsentChange(patient.short_id, clinician.short_id, granted=True, changed=not already)

    async def revoke_access(self, clinician_id: str) -> ConsentChange:
        patient = self.session.require(CAP_REVOKE_ACCESS)
        clinician = await self.session.resolver.resolve(clinician_id, Role.CLINICIAN)
        ledger = self.session.ledger

        granted = await ledger.is_permission_granted(patient.short_id, clinician.short_id)
        try:
            if granted:
                await ledger.revoke_permission(
                    patient.short_id, clinician.short_id, sender=self.session.wallet_address
                )
            await ledger.revoke_access_from_doctor(clinician.wallet_address, sender=self.session.wallet_address)
        except LedgerRevert as exc:
            raise InvalidTransition(f"Could not revoke access: {exc.reason}") from exc
        finally:
            if self.cache is not None:
                self.cache.forget(patient.short_id, clinician.short_id)

        logger.info("%s revoked access from %s", patient.short_id, clinician.short_id)
        return ConsentChange(patient.short_id, clinician.short_id, granted=False, changed=granted)
