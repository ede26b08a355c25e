from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging
import uvicorn

from auth import (
    CurrentUser,
    create_access_token,
    require_admin,
    require_auth,
    require_farmer,
    require_supply_chain_roles,
)
from blockchain import MirrorResult, connect_ledger
from config import Settings, settings
from database import Batch, Database, HandoffEvent, User
from errors import LedgerError, NotFoundError, PermissionDeniedError, PersistenceError, TraceError, ValidationError
from schemas import (
    BatchDetailResponse,
    BatchResponse,
    BatchStatus,
    CreateBatchRequest,
    CreateBatchResponse,
    ErrorResponse,
    HandoffEventResponse,
    HandoffResponse,
    HandoffEventType,
    LedgerStatsResponse,
    LedgerStatus,
    LoginRequest,
    LoginResponse,
    PurchaseRequest,
    QRCodeResponse,
    RegisterRequest,
    RegisterResponse,
    TransferRequest,
    UserInfo,
    UserRole,
    VerifyUserResponse,
)
from services import (
    AccountService,
    BatchService,
    CredentialStore,
    HandoffOutcome,
    HandoffWorkflow,
    QRService,
)
from utils import generate_explorer_url, is_valid_address, is_valid_transaction_hash, mask_phone, percentage
from wallet import WalletService


logger = logging.getLogger("agritrace.backend")


@dataclass
class ServiceContainer:
    settings: Settings
    db: Database
    ledger: Any
    wallet: WalletService
    credentials: CredentialStore
    accounts: AccountService
    batches: BatchService
    handoff: HandoffWorkflow
    qr: QRService


def build_services(
    app_settings: Settings,
    db: Database,
    ledger: Any,
    wallet: Optional[WalletService] = None,
) -> ServiceContainer:
    wallet = wallet or WalletService()
    credentials = CredentialStore(db)
    qr = QRService(app_settings.FRONTEND_URL)
    return ServiceContainer(
        settings=app_settings,
        db=db,
        ledger=ledger,
        wallet=wallet,
        credentials=credentials,
        accounts=AccountService(credentials, wallet, ledger, app_settings),
        batches=BatchService(db, ledger, wallet, qr),
        handoff=HandoffWorkflow(db, ledger, wallet),
        qr=qr,
    )


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services are not available")
    return services


# ----------------------------------------------------------------------
# Response mapping
# ----------------------------------------------------------------------
def _map_user(user: User) -> UserInfo:
    role = UserRole(user.role)
    return UserInfo(
        id=user.id,
        phone=user.phone,
        name=user.name,
        location=user.location,
        role=role,
        roleLabel=role.label,
        walletAddress=user.wallet_address,
        isVerified=user.is_verified,
        createdAt=user.created_at,
    )


def _map_ledger(result: Optional[MirrorResult]) -> Optional[LedgerStatus]:
    if result is None:
        return None
    if result.error is not None:
        error = result.error.message
    else:
        error = result.reason
    return LedgerStatus(
        action=result.action,
        status=result.status,
        transactionHash=result.tx_hash,
        explorerUrl=generate_explorer_url(result.tx_hash),
        error=error,
    )


def _map_batch(batch: Batch) -> BatchResponse:
    status = BatchStatus(batch.status)
    return BatchResponse(
        id=batch.id,
        batchNumber=batch.batch_number,
        produce=batch.produce,
        variety=batch.variety,
        quantity=batch.quantity,
        price=batch.price,
        qualityGrade=batch.quality_grade,
        isOrganic=batch.is_organic,
        farmLocation=batch.farm_location,
        gpsCoordinates=batch.gps_coordinates,
        status=status,
        statusLabel=status.label,
        isFinalStage=status == BatchStatus.SOLD,
        producerId=batch.producer_id,
        producerName=batch.producer.name if batch.producer else None,
        currentHolderId=batch.current_holder_id,
        currentHolderName=batch.current_holder.name if batch.current_holder else None,
        harvestDate=batch.harvest_date,
        createdAt=batch.created_at,
        photoUrl=batch.photo_url,
        metadataUrl=batch.metadata_url,
        qrCode=batch.qr_code,
        blockchainId=batch.blockchain_id,
        registrationTxHash=batch.registration_tx_hash,
        parentBatchId=batch.parent_batch_id,
    )


def _map_event(event: HandoffEvent) -> HandoffEventResponse:
    return HandoffEventResponse(
        id=event.id,
        batchId=event.batch_id,
        fromUserId=event.from_user_id,
        fromUserName=event.from_user.name if event.from_user else None,
        toUserId=event.to_user_id,
        toUserName=event.to_user.name if event.to_user else None,
        eventType=HandoffEventType(event.event_type),
        status=BatchStatus(event.status),
        quantity=event.quantity,
        price=event.price,
        location=event.location,
        gpsCoordinates=event.gps_coordinates,
        temperature=event.temperature,
        notes=event.notes,
        scanLocation=event.scan_location,
        photoUrl=event.photo_url,
        documentUrl=event.document_url,
        transactionHash=event.tx_hash,
        createdAt=event.created_at,
    )


def _map_handoff(outcome: HandoffOutcome, message: str) -> HandoffResponse:
    return HandoffResponse(
        message=message,
        event=_map_event(outcome.event),
        batch=_map_batch(outcome.batch),
        remainder=_map_batch(outcome.remainder) if outcome.remainder else None,
        ledger=_map_ledger(outcome.ledger),
    )


def _error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, details=details).model_dump(),
    )


router = APIRouter()


@router.get("/")
async def root():
    return {"message": "AgriTrace Backend API", "status": "running", "version": "1.0.0"}


@router.get("/api/health")
async def health_check(services: ServiceContainer = Depends(get_services)):
    try:
        services.credentials.counts()
        database_status = "connected"
    except PersistenceError as exc:
        logger.error("Health check database failure: %s", exc.details)
        database_status = "unavailable"

    is_connected = await services.ledger.check_connection()
    return {
        "status": "healthy" if database_status == "connected" else "degraded",
        "database": database_status,
        "blockchainConnected": is_connected,
        "network": services.settings.NETWORK_NAME,
        "contractAddress": services.ledger.contract_address,
    }


# Authentication Endpoints
@router.post("/api/register", response_model=RegisterResponse, status_code=201)
async def register(request: RegisterRequest, services: ServiceContainer = Depends(get_services)):
    """Register a stakeholder and issue a custodial wallet"""
    registration = await services.accounts.register(
        {
            "phone": request.phone,
            "name": request.name,
            "location": request.location,
            "role": request.role,
            "password": request.password,
            "gps_coordinates": request.gpsCoordinates,
        }
    )
    user = registration.user
    return RegisterResponse(
        message="User registered successfully",
        token=create_access_token(user.id, user.phone, UserRole(user.role)),
        user=_map_user(user),
        ledger=[_map_ledger(result) for result in registration.ledger],
    )


@router.post("/api/login", response_model=LoginResponse)
async def login(request: LoginRequest, services: ServiceContainer = Depends(get_services)):
    """Login endpoint for all user types"""
    user = await services.accounts.login(request.phone, request.password)
    role = UserRole(user.role)
    return LoginResponse(
        success=True,
        token=create_access_token(user.id, user.phone, role),
        user=_map_user(user),
        message=f"Logged in as {role.label}",
    )


@router.get("/api/profile", response_model=UserInfo)
async def get_profile(user: CurrentUser = Depends(require_auth), services: ServiceContainer = Depends(get_services)):
    """Get current user information"""
    return _map_user(await services.accounts.profile(user.id))


@router.get("/api/users/role/{role}", response_model=List[UserInfo])
async def list_users_by_role(
    role: int,
    user: CurrentUser = Depends(require_auth),
    services: ServiceContainer = Depends(get_services),
):
    """Verified stakeholders of a role, used to pick a transfer recipient"""
    try:
        wanted = UserRole(role)
    except ValueError:
        raise ValidationError("Invalid role", details="role must be 0-3")
    return [_map_user(record) for record in services.credentials.list_by_role(wanted)]


@router.post("/api/admin/verify/{user_id}", response_model=VerifyUserResponse, dependencies=[Depends(require_admin)])
async def verify_user(user_id: int, services: ServiceContainer = Depends(get_services)):
    verification = await services.accounts.verify_user(user_id)
    return VerifyUserResponse(
        message="User verified successfully",
        user=_map_user(verification.user),
        ledger=_map_ledger(verification.ledger),
    )


# Batch Management Endpoints
@router.post("/api/batches", response_model=CreateBatchResponse, status_code=201)
async def create_batch(
    request: CreateBatchRequest,
    user: CurrentUser = Depends(require_farmer),
    services: ServiceContainer = Depends(get_services),
):
    """Create a new batch (farmers only)"""
    creation = await services.batches.create_batch(
        {
            "produce": request.produce,
            "variety": request.variety,
            "quantity": request.quantity,
            "price": request.price,
            "quality_grade": request.qualityGrade,
            "is_organic": request.isOrganic,
            "farm_location": request.farmLocation,
            "gps_coordinates": request.gpsCoordinates,
            "photo_url": request.photoUrl,
            "metadata_url": request.metadataUrl,
        },
        producer_id=user.id,
        password=request.password,
    )
    return CreateBatchResponse(
        message="Batch created successfully",
        batch=_map_batch(creation.batch),
        ledger=_map_ledger(creation.ledger),
    )


@router.get("/api/batches", response_model=List[BatchResponse])
async def list_batches(user: CurrentUser = Depends(require_auth), services: ServiceContainer = Depends(get_services)):
    return [_map_batch(batch) for batch in services.batches.list_all()]


@router.get("/api/batches/my-batches", response_model=List[BatchResponse])
async def my_batches(user: CurrentUser = Depends(require_auth), services: ServiceContainer = Depends(get_services)):
    """Batches produced by the current user"""
    return [_map_batch(batch) for batch in services.batches.list_produced_by(user.id)]


@router.get("/api/batches/inventory", response_model=List[BatchResponse])
async def inventory(user: CurrentUser = Depends(require_auth), services: ServiceContainer = Depends(get_services)):
    """Batches currently held by the current user"""
    return [_map_batch(batch) for batch in services.batches.list_held_by(user.id)]


@router.get("/api/batches/available", response_model=List[BatchResponse])
async def available_batches(user: CurrentUser = Depends(require_auth), services: ServiceContainer = Depends(get_services)):
    """Batches the current user's role can receive next"""
    record = services.credentials.get(user.id)
    return [_map_batch(batch) for batch in services.batches.list_available_for(record)]


# Consumer Audit Endpoints (public - no auth required for QR scanning)
@router.get("/api/batches/{batch_id}", response_model=BatchDetailResponse)
async def get_batch_details(batch_id: int, services: ServiceContainer = Depends(get_services)):
    batch = services.batches.get_batch(batch_id)
    history = services.batches.get_batch_history(batch_id)
    return BatchDetailResponse(
        **_map_batch(batch).model_dump(),
        history=[_map_event(event) for event in history],
    )


@router.get("/api/batches/{batch_id}/history", response_model=List[HandoffEventResponse])
async def get_batch_history(batch_id: int, services: ServiceContainer = Depends(get_services)):
    return [_map_event(event) for event in services.batches.get_batch_history(batch_id)]


@router.get("/api/batches/{batch_id}/qr", response_model=QRCodeResponse)
async def get_batch_qr(batch_id: int, services: ServiceContainer = Depends(get_services)):
    batch = services.batches.get_batch(batch_id)
    farmer_name = batch.producer.name if batch.producer else None
    return QRCodeResponse(**services.qr.generate(batch, farmer_name))


@router.post("/api/batches/{batch_id}/transfer", response_model=HandoffResponse)
async def transfer_batch(
    batch_id: int,
    request: TransferRequest,
    user: CurrentUser = Depends(require_supply_chain_roles),
    services: ServiceContainer = Depends(get_services),
):
    """Current holder hands the batch to the next stakeholder"""
    recipient = services.credentials.get_by_phone(request.toPhone)
    if recipient is None:
        raise NotFoundError("Recipient not found", details=f"no user with phone {mask_phone(request.toPhone)}")

    outcome = await services.handoff.record_handoff(
        batch_id,
        user.id,
        recipient.id,
        {
            "quantity": request.quantity,
            "price": request.price,
            "location": request.location,
            "password": request.password,
            "gps_coordinates": request.gpsCoordinates,
            "temperature": request.temperature,
            "notes": request.notes,
            "scan_location": request.scanLocation,
            "photo_url": request.photoUrl,
            "document_url": request.documentUrl,
        },
    )
    return _map_handoff(outcome, f"Batch transferred to {recipient.name}")


@router.post("/api/batches/{batch_id}/purchase", response_model=HandoffResponse)
async def purchase_batch(
    batch_id: int,
    request: PurchaseRequest,
    user: CurrentUser = Depends(require_auth),
    services: ServiceContainer = Depends(get_services),
):
    """A verified stakeholder takes over a batch after scanning its QR code"""
    buyer = services.credentials.get(user.id)
    if not buyer.is_verified:
        raise PermissionDeniedError("Only verified users can purchase products")

    if request.qrPayload:
        scanned = services.qr.decode_payload(request.qrPayload)
        if scanned["batchId"] != batch_id:
            raise ValidationError("QR code does not belong to this batch")

    batch = services.batches.get_batch(batch_id)
    if batch.current_holder_id == buyer.id:
        raise ValidationError("You already hold this batch")

    outcome = await services.handoff.record_handoff(
        batch_id,
        batch.current_holder_id,
        buyer.id,
        {
            "quantity": request.quantity,
            "price": request.price,
            "location": request.location,
            "gps_coordinates": request.gpsCoordinates,
            "temperature": request.temperature,
            "notes": request.notes,
            "scan_location": request.scanLocation,
            "photo_url": request.photoUrl,
        },
    )
    return _map_handoff(outcome, "Product purchased successfully")


# Blockchain verification endpoints
@router.get("/api/blockchain/verify-batch/{batch_id}")
async def verify_batch_on_chain(batch_id: int, services: ServiceContainer = Depends(get_services)):
    """Compare the database record of a batch with the ledger copy"""
    batch = services.batches.get_batch(batch_id)
    database_record = _map_batch(batch).model_dump(mode="json")
    if batch.blockchain_id is None:
        return {
            "verified": False,
            "reason": "Batch is not registered on-chain",
            "database": database_record,
        }

    try:
        product = await services.ledger.get_product(batch.blockchain_id)
        transactions = await services.ledger.get_product_transactions(batch.blockchain_id)
    except LedgerError as exc:
        logger.warning("Ledger lookup for batch %s failed: %s", batch.batch_number, exc.message)
        return {
            "verified": False,
            "reason": "Ledger unavailable",
            "error": exc.message,
            "database": database_record,
        }

    producer = batch.producer
    checks = {
        "produce": product["name"] == batch.produce,
        "variety": product["variety"] == batch.variety,
        "farmer": bool(producer) and product["farmer"].lower() == producer.wallet_address.lower(),
    }
    return {
        "verified": all(checks.values()),
        "checks": checks,
        "database": database_record,
        "blockchain": product,
        "transactions": transactions,
        "explorerUrl": generate_explorer_url(batch.registration_tx_hash),
    }


@router.get("/api/blockchain/verify-transaction/{tx_hash}")
async def verify_transaction(tx_hash: str, services: ServiceContainer = Depends(get_services)):
    if not is_valid_transaction_hash(tx_hash):
        raise ValidationError("Invalid transaction hash")
    try:
        receipt = await services.ledger.get_transaction_receipt(tx_hash)
    except LedgerError as exc:
        return {"found": False, "transactionHash": tx_hash, "error": exc.message}
    if receipt is None:
        return {"found": False, "transactionHash": tx_hash}
    return {
        "found": True,
        "transactionHash": tx_hash,
        "successful": receipt["status"] == 1,
        "receipt": receipt,
        "explorerUrl": generate_explorer_url(tx_hash),
    }


@router.get("/api/blockchain/verify-address/{address}")
async def verify_address(address: str, services: ServiceContainer = Depends(get_services)):
    if not is_valid_address(address):
        raise ValidationError("Invalid wallet address")

    user = services.credentials.get_by_wallet(address)
    result: Dict[str, Any] = {
        "address": address,
        "registered": user is not None,
        "user": _map_user(user).model_dump(mode="json") if user else None,
    }
    try:
        result["verifiedOnChain"] = await services.ledger.is_stakeholder_verified(address)
        result["balance"] = await services.ledger.get_balance(address)
    except LedgerError as exc:
        result["verifiedOnChain"] = None
        result["balance"] = None
        result["error"] = exc.message
    return result


@router.get("/api/blockchain/stats", response_model=LedgerStatsResponse)
async def ledger_stats(services: ServiceContainer = Depends(get_services)):
    users = services.credentials.counts()
    batches = services.batches.counts()
    return LedgerStatsResponse(
        database={
            "users": users["total"],
            "verifiedUsers": users["verified"],
            **batches,
        },
        blockchain={
            "connected": await services.ledger.check_connection(),
            "network": services.settings.NETWORK_NAME,
            "chainId": services.settings.CHAIN_ID,
            "contractAddress": services.ledger.contract_address,
            "masterWallet": services.ledger.master_address,
        },
        verificationPercentage={
            "users": percentage(users["verified"], users["total"]),
            "batches": percentage(batches["batchesOnChain"], batches["batches"]),
            "events": percentage(batches["eventsOnChain"], batches["events"]),
        },
    )


def create_app(
    app_settings: Settings = settings,
    database: Optional[Database] = None,
    ledger: Any = None,
    wallet: Optional[WalletService] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logging.basicConfig(
            level=app_settings.LOG_LEVEL.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        db = database or Database(app_settings.DATABASE_URL, echo=app_settings.DATABASE_ECHO)
        db.create_all()
        chain = ledger if ledger is not None else await connect_ledger(app_settings)
        app.state.services = build_services(app_settings, db, chain, wallet)
        logger.info("AgriTrace backend ready (ledger: %s)", type(chain).__name__)

        yield
        # Shutdown
        if database is None:
            db.dispose()

    app = FastAPI(
        title="AgriTrace Backend API",
        description="Farm-to-consumer produce traceability with custodial wallets and ledger mirroring",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS middleware for frontend communication
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TraceError)
    async def trace_error_handler(request: Request, exc: TraceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.details)
        return _error_response(exc.status_code, exc.message, exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return _error_response(400, "Validation failed", details)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG,
    )
