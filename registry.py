import logging
import threading
from typing import Optional, Union

from passlib.hash import argon2
from sqlalchemy.exc import IntegrityError

from clock import MonotonicClock
from db import SessionLocal
from errors import AlreadyRegistered, BadCredentials, InvalidRole, NotFound
from models import Actor, Role
from schemas import ActorOut

logger = logging.getLogger("ehr.registry")


def parse_role(value: Union[Role, str]) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise InvalidRole(f"role must be one of {', '.join(r.value for r in Role)}", field="role")


class IdentityRegistry:
    """address -> (name, role). Registration is terminal; role never changes."""

    def __init__(self, session_factory=SessionLocal, clock=None):
        self._session_factory = session_factory
        self._clock = clock or MonotonicClock()
        # register() must be strictly consistent; the primary key backs this up across processes
        self._write_lock = threading.Lock()

    def register(self, address: str, name: str, role: Union[Role, str], password: Optional[str] = None) -> ActorOut:
        role = parse_role(role)
        with self._write_lock, self._session_factory() as db:
            if db.get(Actor, address) is not None:
                logger.warning("rejected re-registration of %s", address)
                raise AlreadyRegistered(f"{address} is already registered", field="address")
            actor = Actor(
                address=address,
                name=name,
                role=role,
                is_registered=True,
                registered_at=self._clock.now(),
                password_hash=argon2.hash(password) if password else None,
            )
            db.add(actor)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise AlreadyRegistered(f"{address} is already registered", field="address")
            logger.info("registered %s as %s", address, role.value)
            return ActorOut.model_validate(actor)

    def lookup(self, address: str) -> ActorOut:
        with self._session_factory() as db:
            actor = db.get(Actor, address)
            if actor is None or not actor.is_registered:
                raise NotFound(f"{address} is not registered", field="address")
            return ActorOut.model_validate(actor)

    def is_role(self, address: str, role: Union[Role, str]) -> bool:
        try:
            role = parse_role(role)
        except InvalidRole:
            return False
        with self._session_factory() as db:
            actor = db.get(Actor, address)
            return actor is not None and actor.is_registered and actor.role == role

    def is_registered(self, address: str) -> bool:
        with self._session_factory() as db:
            actor = db.get(Actor, address)
            return actor is not None and actor.is_registered

    def authenticate(self, address: str, password: str) -> ActorOut:
        with self._session_factory() as db:
            actor = db.get(Actor, address)
            if (actor is None or not actor.is_registered or not actor.password_hash
                    or not argon2.verify(password, actor.password_hash)):
                logger.warning("failed login for %s", address)
                raise BadCredentials("bad address or password")
            return ActorOut.model_validate(actor)
