import logging
from typing import List

from sqlalchemy.exc import IntegrityError

from clock import MonotonicClock
from db import SessionLocal
from errors import NotAPatient, NotFound, NotRegistered, TargetIsPatient
from models import AuthorizationEdge, Role
from registry import IdentityRegistry
from schemas import GrantOut

logger = logging.getLogger("ehr.authorization")


class AuthorizationGraph:
    """
    Per-patient set of providers allowed to act on the patient's records.

    Self-access is never stored as an edge: ``is_authorized(p, p)`` short-circuits,
    so there is nothing a patient could revoke to lock themselves out.
    """

    def __init__(self, registry: IdentityRegistry, session_factory=SessionLocal, clock=None):
        self._registry = registry
        self._session_factory = session_factory
        self._clock = clock or MonotonicClock()

    def _require_patient(self, address: str, unregistered_error=NotRegistered):
        try:
            actor = self._registry.lookup(address)
        except NotFound:
            raise unregistered_error(f"{address} is not registered", field="patient_address")
        if actor.role is not Role.PATIENT:
            raise NotAPatient(f"{address} is a {actor.role.value}, only patients grant access",
                              field="patient_address")
        return actor

    def grant(self, patient_address: str, provider_address: str) -> GrantOut:
        self._require_patient(patient_address)
        try:
            provider = self._registry.lookup(provider_address)
        except NotFound:
            raise NotRegistered(f"{provider_address} is not registered", field="provider_address")
        if not provider.role.is_provider:
            raise TargetIsPatient(f"{provider_address} is a patient, not a provider", field="provider_address")

        with self._session_factory() as db:
            edge = db.query(AuthorizationEdge).filter_by(
                patient_address=patient_address, provider_address=provider_address
            ).first()
            if edge is not None and edge.active:
                return GrantOut.model_validate(edge)
            if edge is None:
                edge = AuthorizationEdge(patient_address=patient_address, provider_address=provider_address)
                db.add(edge)
            edge.active = True
            edge.granted_at = self._clock.now()
            edge.revoked_at = None
            try:
                db.commit()
            except IntegrityError:
                # Concurrent grant outside a lane won the insert; that grant is ours too
                db.rollback()
                edge = db.query(AuthorizationEdge).filter_by(
                    patient_address=patient_address, provider_address=provider_address
                ).one()
                return GrantOut.model_validate(edge)
            logger.info("granted %s -> %s", patient_address, provider_address)
            return GrantOut.model_validate(edge)

    def revoke(self, patient_address: str, provider_address: str) -> None:
        self._require_patient(patient_address, unregistered_error=NotAPatient)
        with self._session_factory() as db:
            edge = db.query(AuthorizationEdge).filter_by(
                patient_address=patient_address, provider_address=provider_address, active=True
            ).first()
            if edge is None:
                return
            edge.active = False
            edge.revoked_at = self._clock.now()
            db.commit()
            logger.info("revoked %s -> %s", patient_address, provider_address)

    def is_authorized(self, patient_address: str, provider_address: str) -> bool:
        if patient_address == provider_address:
            return True
        with self._session_factory() as db:
            edge = db.query(AuthorizationEdge.id).filter_by(
                patient_address=patient_address, provider_address=provider_address, active=True
            ).first()
            return edge is not None

    def list_providers(self, patient_address: str, include_revoked: bool = False) -> List[GrantOut]:
        with self._session_factory() as db:
            q = db.query(AuthorizationEdge).filter_by(patient_address=patient_address)
            if not include_revoked:
                q = q.filter_by(active=True)
            edges = q.order_by(AuthorizationEdge.granted_at.asc(), AuthorizationEdge.id.asc()).all()
            return [GrantOut.model_validate(e) for e in edges]
