import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from medgate import __version__
from medgate.audit import AuditFilters, RetryPolicy
from medgate.consent import ConsentRevocationRequest
from medgate.content_store import FileSystemContentStore, InMemoryContentStore, IpfsHttpContentStore
from medgate.errors import AlreadyRevoked, ErrorCode, Forbidden, MedGateError, ValidationError
from medgate.ledger import HttpLedgerClient, InMemoryLedger
from medgate.logging_config import configure_logging, get_request_id, set_request_id
from medgate.models import AuditEventType, Role
from medgate.nonces import InMemoryNonceStore
from medgate.policy import PolicyRuleSet
from medgate.sessions import Session
from medgate.signing import AuditSigner
from medgate.system import MedGate
from medgate.util import b64e, parse_rfc3339, to_rfc3339, utc_now

from .config import Settings, load_bootstrap, load_policy, validate_config
from .db import SqliteDatabase, SqliteLedger, SqliteNonceStore, SqliteRecordCatalog
from .models import (
    AuthenticateRequest,
    ComplianceReportRequest,
    DeactivateRequest,
    DecisionRequest,
    DownloadRequest,
    ExportRequest,
    GrantRequest,
    NonceRequest,
    RegisterRequest,
    RevokeRequest,
    UploadRequest,
    ValidateAccessRequest,
)
from .security import extract_bearer_token, generate_request_id, sanitize_for_logging

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCode.AUTH_FAILED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.ALREADY_REVOKED: 409,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.STORAGE_UNAVAILABLE: 503,
    ErrorCode.LEDGER_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}

AUDIT_ROLES = (Role.AUDITOR, Role.SYSTEM_ADMIN)

# Privileged routes whose malformed bodies are still audited: event type and outcome.
AUDITED_BODIES = {
    "/consent/grant": (AuditEventType.CONSENT_GRANTED, "rejected"),
    "/consent/revoke": (AuditEventType.CONSENT_REVOKED, "rejected"),
    "/records/upload": (AuditEventType.RECORD_CREATED, "failed"),
    "/records/download": (AuditEventType.RECORD_ACCESSED, "failed"),
}


def load_audit_signer(settings: Settings) -> AuditSigner:
    try:
        return AuditSigner.from_file(settings.audit_signing_key_path)
    except FileNotFoundError:
        if settings.is_production():
            raise RuntimeError(
                f"audit signing key not found at {settings.audit_signing_key_path}; "
                "run tools/gen_keys.py"
            )
    logger.warning("No audit signing key at %s; using an ephemeral key", settings.audit_signing_key_path)
    return AuditSigner.generate()


def build_system(settings: Settings) -> MedGate:
    """Wire a MedGate system from configuration."""
    db = None
    if "sqlite" in (settings.ledger_backend, settings.nonce_backend, settings.record_catalog_backend):
        db = SqliteDatabase(settings.db_path)
        db.init_schema()

    if settings.ledger_backend == "sqlite":
        ledger = SqliteLedger(db)
    elif settings.ledger_backend == "http":
        ledger = HttpLedgerClient(settings.ledger_url, timeout=settings.ledger_timeout_seconds)
    elif settings.ledger_backend == "memory":
        ledger = InMemoryLedger()
    else:
        raise ValueError(f"unknown LEDGER_BACKEND: {settings.ledger_backend}")

    if settings.content_store_backend == "filesystem":
        content_store = FileSystemContentStore(settings.content_store_path)
    elif settings.content_store_backend == "ipfs":
        content_store = IpfsHttpContentStore(settings.ipfs_api_url, timeout=settings.storage_timeout_seconds)
    elif settings.content_store_backend == "memory":
        content_store = InMemoryContentStore()
    else:
        raise ValueError(f"unknown CONTENT_STORE_BACKEND: {settings.content_store_backend}")

    nonce_store = SqliteNonceStore(db) if settings.nonce_backend == "sqlite" else InMemoryNonceStore()
    if settings.record_catalog_backend not in ("sqlite", "memory"):
        raise ValueError(f"unknown RECORD_CATALOG_BACKEND: {settings.record_catalog_backend}")
    record_catalog = SqliteRecordCatalog(db) if settings.record_catalog_backend == "sqlite" else None
    policy = load_policy(settings.policy_path)

    return MedGate.build(
        ledger=ledger,
        content_store=content_store,
        audit_signer=load_audit_signer(settings),
        nonce_store=nonce_store,
        rule_set=PolicyRuleSet.from_dict(policy) if policy else None,
        retry_policy=RetryPolicy(
            max_attempts=settings.ledger_retry_attempts,
            initial_backoff=settings.ledger_retry_initial_seconds,
            max_backoff=settings.ledger_retry_max_seconds,
            interval=settings.ledger_retry_interval_seconds,
            submit_timeout=settings.ledger_timeout_seconds,
            max_in_flight=settings.ledger_max_in_flight,
            abandoned_interval=settings.ledger_abandoned_retry_seconds,
        ),
        bootstrap=load_bootstrap(settings.bootstrap_path),
        nonce_ttl=timedelta(seconds=settings.nonce_ttl_seconds),
        session_ttl=timedelta(seconds=settings.session_ttl_seconds),
        storage_timeout=settings.storage_timeout_seconds,
        storage_workers=settings.storage_workers,
        record_catalog=record_catalog,
        grant_window=timedelta(seconds=settings.grant_window_seconds),
        max_page_size=settings.audit_max_page_size,
    )


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data, "timestamp": to_rfc3339(utc_now())}


def error_response(status_code: int, error: Dict[str, Any], request: Request) -> JSONResponse:
    error = dict(error)
    error["request_id"] = getattr(request.state, "request_id", None) or get_request_id()
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "timestamp": to_rfc3339(utc_now())},
    )


def get_system(request: Request) -> MedGate:
    return request.app.state.system


def current_session(request: Request) -> Session:
    token = extract_bearer_token(request.headers.get("authorization"))
    return get_system(request).sessions.resolve(token)


def session_or_none(request: Request) -> Optional[Session]:
    try:
        return current_session(request)
    except MedGateError:
        return None


def require_roles(session: Session, *roles: Role) -> None:
    if session.role not in roles:
        raise Forbidden("Insufficient role for this operation")


def require_self_or_admin(session: Session, user_id: str) -> None:
    if session.user_id != user_id and session.role != Role.SYSTEM_ADMIN:
        raise Forbidden("Not permitted to act for another user")


def create_app(system: Optional[MedGate] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="MedGate", version=__version__)
    app.state.system = system
    app.state.owns_system = system is None
    app.state.settings = settings

    @app.on_event("startup")
    def _startup():
        if app.state.system is None:
            configure_logging(settings.log_level, settings.log_json, settings.log_file)
            app.state.system = build_system(settings)
        app.state.system.start()

    @app.on_event("shutdown")
    def _shutdown():
        if app.state.system is None:
            return
        if app.state.owns_system:
            app.state.system.close()
        else:
            app.state.system.stop()

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = set_request_id(request.headers.get("x-request-id") or generate_request_id())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(MedGateError)
    async def medgate_error_handler(request: Request, exc: MedGateError):
        status_code = STATUS_BY_CODE.get(exc.code, 500)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.code.value)
        return error_response(status_code, exc.to_dict(), request)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or "body"
        if isinstance(exc.body, dict):
            logger.info("Rejected request body: %s", sanitize_for_logging(exc.body))
        err = ValidationError(field, first.get("msg", "invalid request"))
        audited = AUDITED_BODIES.get(request.url.path)
        session = session_or_none(request) if audited else None
        if session is not None:
            event_type, outcome = audited
            body = exc.body if isinstance(exc.body, dict) else {}
            resource_id = body.get("consent_token_id") or body.get("content_id")
            await run_in_threadpool(
                get_system(request).audit.record_event, event_type, session.user_id, {
                    "outcome": outcome,
                    "error": err.code.value,
                    "field": field,
                    "patient_id": body.get("patient_id"),
                },
                resource_id if isinstance(resource_id, str) else None,
            )
        return error_response(400, err.to_dict(), request)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, MedGateError().to_dict(), request)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/health")
    def health(request: Request):
        mg = get_system(request)
        audit_health = mg.audit.health()
        return ok({
            "status": audit_health["status"],
            "version": __version__,
            "environment": settings.env,
            "audit": audit_health,
            "pending_nonces": mg.nonces.pending_count(),
            "sessions": mg.sessions.stats(),
            "config_files": validate_config(settings),
        })

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    @app.post("/auth/nonce")
    def request_nonce(req: NonceRequest, request: Request):
        nonce = get_system(request).nonces.issue(req.user_id)
        return ok(nonce.to_dict())

    @app.post("/auth/authenticate")
    def authenticate(req: AuthenticateRequest, request: Request):
        mg = get_system(request)
        identity = mg.verifier.verify(req.user_id, req.nonce, req.signature)
        session = mg.sessions.issue(identity)
        data = session.to_dict()
        data["user"] = identity.to_dict()
        return ok(data)

    @app.post("/auth/logout")
    def logout(request: Request, session: Session = Depends(current_session)):
        token = extract_bearer_token(request.headers.get("authorization"))
        get_system(request).sessions.revoke(token)
        return ok({"user_id": session.user_id, "logged_out": True})

    @app.post("/auth/register", status_code=201)
    def register(req: RegisterRequest, request: Request):
        identity = get_system(request).identities.register(
            req.user_id, req.role, req.public_keys.model_dump())
        return ok(identity.to_dict())

    @app.get("/auth/me")
    def me(request: Request, session: Session = Depends(current_session)):
        return ok(get_system(request).identities.require(session.user_id).to_dict())

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @app.get("/admin/pending")
    def pending(request: Request, session: Session = Depends(current_session)):
        require_roles(session, Role.SYSTEM_ADMIN)
        return ok([i.to_dict() for i in get_system(request).identities.pending()])

    @app.post("/admin/decide")
    def decide(req: DecisionRequest, request: Request, session: Session = Depends(current_session)):
        require_roles(session, Role.SYSTEM_ADMIN)
        identity = get_system(request).identities.decide(
            session.user_id, req.user_id, req.decision, req.admin_signature)
        return ok(identity.to_dict())

    @app.post("/admin/deactivate")
    def deactivate(req: DeactivateRequest, request: Request, session: Session = Depends(current_session)):
        require_roles(session, Role.SYSTEM_ADMIN)
        mg = get_system(request)
        identity = mg.identities.deactivate(session.user_id, req.user_id, req.admin_signature)
        dropped = mg.sessions.revoke_user(req.user_id)
        data = identity.to_dict()
        data["sessions_revoked"] = dropped
        return ok(data)

    @app.post("/admin/ledger/flush")
    def flush_ledger(request: Request, session: Session = Depends(current_session)):
        require_roles(session, Role.SYSTEM_ADMIN)
        mg = get_system(request)
        committed = mg.audit.flush(include_abandoned=True)
        mg.audit.record_event(AuditEventType.SYSTEM_ACCESS, session.user_id, {
            "action": "ledger_flush",
            "committed": committed,
        })
        return ok({"committed": committed, "audit": mg.audit.health()})

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    @app.post("/consent/grant", status_code=201)
    def grant_consent(req: GrantRequest, request: Request, session: Session = Depends(current_session)):
        token = get_system(request).consents.grant(req.model_dump(), requester_id=session.user_id)
        return ok(token.to_dict())

    @app.post("/consent/revoke")
    def revoke_consent(req: RevokeRequest, request: Request, session: Session = Depends(current_session)):
        result = get_system(request).consents.revoke(
            ConsentRevocationRequest(req.consent_token_id, req.patient_signature),
            requester_id=session.user_id,
        )
        if not result.revoked:
            raise AlreadyRevoked(details={"consent_token_id": req.consent_token_id})
        return ok(result.to_dict())

    @app.get("/consent/status")
    def consent_status(patient_id: str, provider_id: str, request: Request,
                       session: Session = Depends(current_session)):
        if session.user_id not in (patient_id, provider_id) and session.role != Role.SYSTEM_ADMIN:
            raise Forbidden("Not a party to this consent")
        return ok(get_system(request).consents.status_summary(patient_id, provider_id))

    @app.get("/consent/patient/{patient_id}")
    def consents_for_patient(patient_id: str, request: Request, session: Session = Depends(current_session)):
        require_self_or_admin(session, patient_id)
        return ok([t.to_dict() for t in get_system(request).consents.list_for_patient(patient_id)])

    @app.get("/consent/provider/{provider_id}")
    def consents_for_provider(provider_id: str, request: Request, session: Session = Depends(current_session)):
        require_self_or_admin(session, provider_id)
        return ok([t.to_dict() for t in get_system(request).consents.list_for_provider(provider_id)])

    @app.get("/consent/token/{token_id}")
    def consent_token(token_id: str, request: Request, session: Session = Depends(current_session)):
        token = get_system(request).consents.get(token_id)
        if session.user_id not in (token.patient_id, token.provider_id) and session.role != Role.SYSTEM_ADMIN:
            raise Forbidden("Not a party to this consent")
        return ok(token.to_dict())

    @app.post("/consent/validate-access")
    def validate_access(req: ValidateAccessRequest, request: Request,
                        session: Session = Depends(current_session)):
        require_self_or_admin(session, req.provider_id)
        decision = get_system(request).access.check_access(
            req.provider_id, req.patient_id, req.resource_type, req.access_level)
        return ok(decision.to_dict())

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @app.post("/records/upload", status_code=201)
    def upload_record(req: UploadRequest, request: Request, session: Session = Depends(current_session)):
        receipt = get_system(request).storage.upload(
            req.patient_id, req.provider_id, req.encrypted_data, req.metadata.model_dump(),
            req.provider_signature, requester_id=session.user_id)
        return ok(receipt.to_dict())

    @app.post("/records/download")
    def download_record(req: DownloadRequest, request: Request, session: Session = Depends(current_session)):
        result = get_system(request).storage.download(
            session.user_id, req.patient_id, req.content_id, req.access_reason)
        data = result.to_dict()
        data["encrypted_data"] = b64e(result.data)
        return ok(data)

    @app.get("/records/patient/{patient_id}")
    def records_for_patient(patient_id: str, request: Request, session: Session = Depends(current_session)):
        require_self_or_admin(session, patient_id)
        return ok([r.to_dict() for r in get_system(request).storage.records_for_patient(patient_id)])

    @app.get("/records/{content_id}/exists")
    def record_exists(content_id: str, request: Request, session: Session = Depends(current_session)):
        return ok({"content_id": content_id, "exists": get_system(request).storage.content_exists(content_id)})

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @app.get("/audit/trail")
    def audit_trail(request: Request, session: Session = Depends(current_session)):
        require_roles(session, *AUDIT_ROLES)
        mg = get_system(request)
        filters = AuditFilters.from_dict(dict(request.query_params))
        result = mg.audit.query(filters)
        mg.audit.record_event(AuditEventType.AUDIT_QUERY, session.user_id, {
            "filters": filters.criteria(),
            "page": result.page,
            "limit": result.limit,
            "returned": len(result.entries),
        })
        return ok(result.to_dict())

    @app.post("/audit/export")
    def audit_export(req: ExportRequest, request: Request, session: Session = Depends(current_session)):
        mg = get_system(request)
        result = mg.audit.export(
            req.format, AuditFilters.from_dict(req.filters), session.user_id, req.requester_signature)
        return ok(result.to_dict())

    @app.post("/audit/compliance-report")
    def compliance_report(req: ComplianceReportRequest, request: Request,
                          session: Session = Depends(current_session)):
        report = get_system(request).audit.compliance_report(
            req.report_type, req.start_date, req.end_date, session.user_id, req.requester_signature)
        return ok(report.to_dict())

    @app.get("/audit/verify-integrity")
    def verify_integrity(request: Request, session: Session = Depends(current_session)):
        require_roles(session, *AUDIT_ROLES)
        mg = get_system(request)
        report = mg.audit.verify_integrity()
        data = report.to_dict()
        data["public_key"] = mg.audit.public_key_b64
        return ok(data)

    @app.get("/audit/statistics")
    def audit_statistics(request: Request, start: Optional[str] = None, end: Optional[str] = None,
                         session: Session = Depends(current_session)):
        require_roles(session, *AUDIT_ROLES)
        try:
            start_dt = parse_rfc3339(start) if start else None
            end_dt = parse_rfc3339(end) if end else None
        except ValueError:
            raise ValidationError("start", "start and end must be RFC 3339 timestamps")
        return ok(get_system(request).audit.statistics(start_dt, end_dt))

    @app.get("/audit/public-key")
    def audit_public_key(request: Request):
        return ok({"public_key": get_system(request).audit.public_key_b64, "alg": "ed25519"})

    return app


app = create_app()
