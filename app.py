import logging
import time
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
import jwt

import config
from db import SessionLocal, engine, init_schema
from errors import (
    AlreadyRegistered, AuditAppendFailed, BadCredentials, LedgerError, NotAuthorized, NotFound,
)
from facade import AccessFacade
from schemas import AccessLogOut, ActorOut, GrantOut, RecordOut

logger = logging.getLogger("ehr.api")

# =========================
# Auth helpers
# =========================
def jwt_issue(address: str, role: str) -> str:
    now = int(time.time())
    payload = {"sub": address, "role": role, "iat": now, "exp": now + config.ACCESS_TOKEN_TTL_MIN * 60}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)

def jwt_verify(token: str):
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

auth_bearer = HTTPBearer()

_facade: Optional[AccessFacade] = None

def get_facade() -> AccessFacade:
    global _facade
    if _facade is None:
        init_schema(engine)
        _facade = AccessFacade(SessionLocal)
    return _facade

def current_address(
    creds: HTTPAuthorizationCredentials = Depends(auth_bearer),
    facade: AccessFacade = Depends(get_facade),
) -> str:
    payload = jwt_verify(creds.credentials)
    address = payload["sub"]
    if not facade.registry.is_registered(address):
        raise HTTPException(status_code=401, detail="Unknown actor")
    return address

def caller_context(request: Request) -> Optional[str]:
    return request.client.host if request.client else None

# =========================
# Schemas
# =========================
class RegisterIn(BaseModel):
    address: str
    name: str
    role: str              # validated by the registry so bad values surface as InvalidRole
    password: str

class LoginIn(BaseModel):
    address: str
    password: str

class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"

class RegisterOut(TokenOut):
    actor: ActorOut

class RecordIn(BaseModel):
    patient_address: str
    content_hash: str
    record_type: str
    description: str = ""

class VerifyOut(BaseModel):
    record_id: int
    intact: bool

# =========================
# FastAPI app
# =========================
app = FastAPI(title="Patient Record Access Ledger")

_STATUS_BY_ERROR = {
    BadCredentials: 401,
    NotFound: 404,
    NotAuthorized: 403,
    AlreadyRegistered: 409,
    AuditAppendFailed: 503,
}

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status = next((code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 400)
    logger.info("%s %s -> %d %s", request.method, request.url.path, status, exc.kind)
    return JSONResponse(status_code=status, content=exc.to_dict())

# -------- Registration / Login --------
@app.post("/register", response_model=RegisterOut)
def register(body: RegisterIn, facade: AccessFacade = Depends(get_facade)):
    actor = facade.register(body.address, body.name, body.role, password=body.password)
    return RegisterOut(actor=actor, access_token=jwt_issue(actor.address, actor.role.value))

@app.post("/login", response_model=TokenOut)
def login(body: LoginIn, facade: AccessFacade = Depends(get_facade)):
    actor = facade.authenticate(body.address, body.password)
    return TokenOut(access_token=jwt_issue(actor.address, actor.role.value))

@app.get("/me", response_model=ActorOut)
def whoami(me: str = Depends(current_address), facade: AccessFacade = Depends(get_facade)):
    return facade.lookup(me)

# -------- Grants --------
@app.post("/grants/{provider_address}", response_model=GrantOut)
def grant_provider(provider_address: str, me: str = Depends(current_address),
                   facade: AccessFacade = Depends(get_facade)):
    return facade.grant(me, provider_address)

@app.delete("/grants/{provider_address}")
def revoke_provider(provider_address: str, me: str = Depends(current_address),
                    facade: AccessFacade = Depends(get_facade)):
    facade.revoke(me, provider_address)
    return {"ok": True, "revoked": provider_address}

@app.get("/grants", response_model=List[GrantOut])
def list_grants(me: str = Depends(current_address), facade: AccessFacade = Depends(get_facade)):
    return facade.list_authorized_providers(me, me)

# -------- Records --------
@app.post("/records", response_model=RecordOut, status_code=201)
def submit_record(body: RecordIn, request: Request, response: Response, me: str = Depends(current_address),
                  facade: AccessFacade = Depends(get_facade)):
    record = facade.submit_record(body.patient_address, me, body.content_hash, body.record_type,
                                  body.description, context=caller_context(request))
    if record.audit_pending:
        # Stored, but the CREATE entry is still queued
        response.status_code = 202
    return record

@app.get("/records/patient/{patient_address}", response_model=List[RecordOut])
def list_patient_records(patient_address: str, request: Request, me: str = Depends(current_address),
                         facade: AccessFacade = Depends(get_facade)):
    return facade.fetch_patient_records(patient_address, me, context=caller_context(request))

@app.get("/records/{record_id}", response_model=RecordOut)
def get_record(record_id: int, request: Request, me: str = Depends(current_address),
               facade: AccessFacade = Depends(get_facade)):
    return facade.fetch_record(record_id, me, context=caller_context(request))

@app.post("/records/{record_id}/archive", response_model=RecordOut)
def archive_record(record_id: int, request: Request, me: str = Depends(current_address),
                   facade: AccessFacade = Depends(get_facade)):
    return facade.archive_record(record_id, me, context=caller_context(request))

# -------- Access logs --------
@app.get("/records/{record_id}/access-logs", response_model=List[AccessLogOut])
def access_logs(record_id: int, me: str = Depends(current_address), facade: AccessFacade = Depends(get_facade)):
    return facade.fetch_access_logs(record_id, me)

@app.get("/records/{record_id}/access-logs/verify", response_model=VerifyOut)
def verify_access_logs(record_id: int, me: str = Depends(current_address),
                       facade: AccessFacade = Depends(get_facade)):
    return VerifyOut(record_id=record_id, intact=facade.verify_access_logs(record_id, me))
