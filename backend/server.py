from fastapi import FastAPI, APIRouter, Depends, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorGridFSBucket
from pymongo.errors import DuplicateKeyError
import base64
import binascii
import io
import logging
import mimetypes
import re
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel
from passlib.context import CryptContext

from config import Settings
from enrichment import EnrichmentService
from errors import (
    AppError,
    CaretakerNotFound,
    DuplicateUsername,
    InvalidCredentials,
    NotFound,
    Unauthenticated,
    ValidationError,
)
from scoping import AccessScope, Role, require_role
from storage import FileStore, Storage

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_token"

# Password hashing configuration
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Checked in place of a stored hash when the username is unknown
DUMMY_PASSWORD_HASH = pwd_context.hash("reminisce-unknown-user")

DATA_URL_PATTERN = re.compile(r"^data:(image/[\w.+-]+);base64,(.*)$", re.DOTALL)

# Raster formats only; uploads are served inline from this origin
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}

# ==================== HELPERS ====================

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password):
    return pwd_context.hash(password)

def clean_phone_for_dial(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    cleaned = re.sub(r"[^\d+]", "", phone)
    return cleaned if cleaned else None

def decode_image_data_url(value: str) -> Tuple[str, bytes]:
    """Split a ``data:image/...;base64,`` URL into content type and bytes."""
    match = DATA_URL_PATTERN.match((value or "").strip())
    if not match:
        raise ValidationError("imageData must be a base64 encoded image data URL")
    content_type = match.group(1).lower()
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Unsupported image type; use JPEG, PNG, GIF or WebP")
    try:
        content = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("imageData is not valid base64")
    if not content:
        raise ValidationError("imageData is empty")
    return content_type, content

def extension_for(content_type: str, fallback: str = ".bin") -> str:
    return mimetypes.guess_extension(content_type) or fallback

def today_utc() -> date:
    return datetime.now(timezone.utc).date()

# ==================== MODELS ====================

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

class ApiModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)

class Account(ApiModel):
    id: int
    username: str
    role: Role
    caretaker_id: Optional[int] = None
    phone_number: Optional[str] = None
    created_at: Optional[str] = None

class CaretakerProfile(ApiModel):
    id: int
    username: str
    phone_number: Optional[str] = None

class RegisterRequest(ApiModel):
    username: NonEmptyStr
    password: str = Field(min_length=1)
    role: Role
    caretaker_username: Optional[str] = None
    phone_number: Optional[str] = None

class LoginRequest(ApiModel):
    username: NonEmptyStr
    password: str

class Memory(ApiModel):
    id: int
    patient_id: int
    image_url: str
    description: Optional[str] = None
    caption: Optional[str] = None
    tags: List[str] = []
    questions: List[str] = []
    ai_question: Optional[str] = None
    active_question_index: int = 0
    active_question_date: Optional[str] = None
    answers: Dict[str, List[str]] = {}
    created_at: str

class MemoryCreate(ApiModel):
    image_url: NonEmptyStr
    description: Optional[str] = None
    patient_id: Optional[int] = None

class MemoryAnswer(ApiModel):
    answer: NonEmptyStr

class MemoryPrompt(ApiModel):
    memory_id: int
    question: Optional[str] = None
    date: str

class Routine(ApiModel):
    id: int
    patient_id: int
    task: str
    time: Optional[str] = None
    frequency: Optional[str] = None
    is_completed: bool = False
    created_at: str

class RoutineCreate(ApiModel):
    task: NonEmptyStr
    time: Optional[str] = None
    frequency: Optional[str] = None
    patient_id: Optional[int] = None

class Medication(ApiModel):
    id: int
    patient_id: int
    name: str
    dosage: Optional[str] = None
    time: Optional[str] = None
    frequency: Optional[str] = None
    taken: bool = False
    created_at: str

class MedicationCreate(ApiModel):
    name: NonEmptyStr
    dosage: Optional[str] = None
    time: Optional[str] = None
    frequency: Optional[str] = None
    patient_id: Optional[int] = None

class EmergencyLog(ApiModel):
    id: int
    patient_id: int
    timestamp: str
    status: str
    resolved: bool = False

class EmergencyTrigger(EmergencyLog):
    caretaker_name: Optional[str] = None
    caretaker_phone: Optional[str] = None
    dial_uri: Optional[str] = None

class ImageUpload(ApiModel):
    image_data: str

class ImageUploaded(ApiModel):
    image_url: str

class TTSRequest(ApiModel):
    text: NonEmptyStr

class TTSResponse(ApiModel):
    audio_url: str

def memory_out(doc: dict) -> dict:
    """Attach the question the patient should currently see."""
    questions = doc.get("questions") or []
    index = doc.get("active_question_index") or 0
    return {**doc, "ai_question": questions[index % len(questions)] if questions else None}

# ==================== SERVICES ====================

class AppServices:
    """Process-wide dependencies, created at startup and closed at shutdown."""

    def __init__(
        self,
        settings: Settings,
        storage: Storage,
        enrichment: EnrichmentService,
        mongo_client: Optional[AsyncIOMotorClient] = None
    ):
        self.settings = settings
        self.storage = storage
        self.enrichment = enrichment
        self.scope = AccessScope(storage.accounts)
        self.mongo_client = mongo_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppServices":
        client = AsyncIOMotorClient(
            settings.mongo_url,
            maxPoolSize=20,
            minPoolSize=5,
            maxIdleTimeMS=30000,
            serverSelectionTimeoutMS=10000
        )
        db = client[settings.db_name]
        storage = Storage(
            db,
            FileStore(AsyncIOMotorGridFSBucket(db)),
            timedelta(days=settings.session_ttl_days)
        )
        return cls(settings, storage, EnrichmentService(settings), mongo_client=client)

    async def startup(self):
        await self.storage.startup()

    async def shutdown(self):
        await self.enrichment.aclose()
        if self.mongo_client is not None:
            self.mongo_client.close()
            logger.info("MongoDB connection closed")

def get_services(request: Request) -> AppServices:
    return request.app.state.services

# ==================== AUTHENTICATION ====================

def session_token_from(request: Request) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE)

    # Fallback to Authorization header
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1].strip()
    return token or None

async def get_current_user(
    request: Request,
    services: AppServices = Depends(get_services)
) -> dict:
    """Resolve the account bound to the request's session."""
    token = session_token_from(request)
    if not token:
        raise Unauthenticated()

    user_id = await services.storage.sessions.resolve(token)
    if user_id is None:
        raise Unauthenticated("Session expired or invalid")

    account = await services.storage.accounts.get(user_id)
    if not account:
        raise Unauthenticated("User not found")
    return account

async def start_session(response: Response, services: AppServices, account: dict):
    token = await services.storage.sessions.create(account["id"])
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        httponly=True,
        secure=services.settings.cookie_secure,
        samesite="lax",
        path="/",
        max_age=services.settings.session_ttl_days * 24 * 60 * 60
    )

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

PatientIdQuery = Annotated[Optional[int], Query(alias="patientId")]

# ==================== AUTH ROUTES ====================

@api_router.post("/register", response_model=Account, status_code=201)
async def register(
    user_data: RegisterRequest,
    response: Response,
    services: AppServices = Depends(get_services)
):
    """Register a caretaker, or a patient linked to an existing caretaker"""
    accounts = services.storage.accounts
    if await accounts.get_by_username(user_data.username):
        raise DuplicateUsername()
    if not user_data.password.strip():
        raise ValidationError("Password is required")

    new_user = {
        "username": user_data.username,
        "hashed_password": get_password_hash(user_data.password),
        "role": user_data.role.value,
        "caretaker_id": None,
        "phone_number": None
    }
    if user_data.role is Role.PATIENT:
        caretaker_username = (user_data.caretaker_username or "").strip()
        if not caretaker_username:
            raise ValidationError("Caretaker username is required for patients")
        caretaker = await accounts.get_by_username(caretaker_username)
        if not caretaker:
            raise CaretakerNotFound()
        if caretaker.get("role") != Role.CARETAKER.value:
            raise CaretakerNotFound("The specified user is not a caretaker.")
        new_user["caretaker_id"] = caretaker["id"]
    elif user_data.role is Role.CARETAKER:
        new_user["phone_number"] = user_data.phone_number
    else:
        raise ValueError(f"Unhandled role: {user_data.role!r}")

    try:
        account = await accounts.create(new_user)
    except DuplicateKeyError:
        raise DuplicateUsername()

    logger.info(f"Registered {account['role']} account {account['username']} (id={account['id']})")
    await start_session(response, services, account)
    return account

@api_router.post("/login", response_model=Account)
async def login(
    form_data: LoginRequest,
    response: Response,
    services: AppServices = Depends(get_services)
):
    """Check credentials and open a session"""
    account = await services.storage.accounts.get_by_username(form_data.username)
    hashed_password = account["hashed_password"] if account else DUMMY_PASSWORD_HASH
    password_ok = verify_password(form_data.password, hashed_password)
    if not account or not password_ok:
        raise InvalidCredentials()

    await start_session(response, services, account)
    logger.info(f"Login for account id={account['id']}")
    return account

@api_router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    services: AppServices = Depends(get_services)
):
    token = session_token_from(request)
    if token:
        await services.storage.sessions.delete(token)
    response.delete_cookie(key=SESSION_COOKIE, path="/")
    return {"message": "Logged out"}

@api_router.get("/user", response_model=Account)
async def get_me(current_user: dict = Depends(get_current_user)):
    return current_user

@api_router.get("/user/patients", response_model=List[Account])
async def get_linked_patients(
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    require_role(current_user, Role.CARETAKER, "Only caretakers have linked patients")
    return await services.storage.accounts.patients_for_caretaker(current_user["id"])

@api_router.get("/user/caretaker", response_model=CaretakerProfile)
async def get_my_caretaker(
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    require_role(current_user, Role.PATIENT, "Only patients have a caretaker")
    caretaker = None
    if current_user.get("caretaker_id") is not None:
        caretaker = await services.storage.accounts.get(current_user["caretaker_id"])
    if not caretaker:
        raise NotFound("Caretaker not found")
    return caretaker

# ==================== MEMORIES ====================

@api_router.get("/memories", response_model=List[Memory])
async def get_memories(
    patient_id: PatientIdQuery = None,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    patient_ids = await services.scope.patient_ids_for_read(current_user, patient_id)
    memories = await services.storage.memories.list(patient_ids)
    return [memory_out(m) for m in memories]

@api_router.post("/memories", response_model=Memory, status_code=201)
async def create_memory(
    memory: MemoryCreate,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    """Analyze the photo, generate prompts, then store the memory"""
    owner_id = await services.scope.patient_id_for_write(current_user, memory.patient_id)
    enrichment = await services.enrichment.enrich_memory(memory.image_url, memory.description)

    doc = await services.storage.memories.create(owner_id, {
        "image_url": memory.image_url,
        "description": memory.description or enrichment["caption"],
        "caption": enrichment["caption"],
        "tags": enrichment["tags"],
        "questions": enrichment["questions"]
    })
    return memory_out(doc)

@api_router.get("/memories/{memory_id}/prompt", response_model=MemoryPrompt)
async def get_memory_prompt(
    memory_id: int,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    """Today's reminiscence question for a memory"""
    memories = services.storage.memories
    memory = await services.scope.authorize_record(current_user, await memories.get(memory_id))
    today = today_utc()
    memory = memory_out(await memories.rotate_question(memory, today))
    return {"memory_id": memory_id, "question": memory["ai_question"], "date": today.isoformat()}

@api_router.post("/memories/{memory_id}/answers", response_model=Memory)
async def answer_memory_prompt(
    memory_id: int,
    payload: MemoryAnswer,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    require_role(current_user, Role.PATIENT, "Only patients can answer memory prompts")
    memories = services.storage.memories
    await services.scope.authorize_record(current_user, await memories.get(memory_id))
    updated = await memories.record_answer(memory_id, payload.answer, today_utc())
    return memory_out(updated)

# ==================== ROUTINES ====================

@api_router.get("/routines", response_model=List[Routine])
async def get_routines(
    patient_id: PatientIdQuery = None,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    patient_ids = await services.scope.patient_ids_for_read(current_user, patient_id)
    return await services.storage.routines.list(patient_ids)

@api_router.post("/routines", response_model=Routine, status_code=201)
async def create_routine(
    routine: RoutineCreate,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    owner_id = await services.scope.patient_id_for_write(current_user, routine.patient_id)
    return await services.storage.routines.create(
        owner_id,
        routine.model_dump(exclude={"patient_id"})
    )

@api_router.patch("/routines/{routine_id}/toggle", response_model=Routine)
async def toggle_routine(
    routine_id: int,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    """Toggle routine completion"""
    routines = services.storage.routines
    await services.scope.authorize_record(current_user, await routines.get(routine_id))
    return await routines.toggle(routine_id)

# ==================== MEDICATIONS ====================

@api_router.get("/medications", response_model=List[Medication])
async def get_medications(
    patient_id: PatientIdQuery = None,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    patient_ids = await services.scope.patient_ids_for_read(current_user, patient_id)
    return await services.storage.medications.list(patient_ids)

@api_router.post("/medications", response_model=Medication, status_code=201)
async def create_medication(
    medication: MedicationCreate,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    owner_id = await services.scope.patient_id_for_write(current_user, medication.patient_id)
    return await services.storage.medications.create(
        owner_id,
        medication.model_dump(exclude={"patient_id"})
    )

@api_router.patch("/medications/{medication_id}/toggle", response_model=Medication)
async def toggle_medication(
    medication_id: int,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    """Toggle whether a medication was taken"""
    medications = services.storage.medications
    await services.scope.authorize_record(current_user, await medications.get(medication_id))
    return await medications.toggle(medication_id)

# ==================== EMERGENCY ====================

@api_router.get("/emergency", response_model=List[EmergencyLog])
async def get_emergency_logs(
    patient_id: PatientIdQuery = None,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    patient_ids = await services.scope.patient_ids_for_read(current_user, patient_id)
    return await services.storage.emergency_logs.list(patient_ids)

@api_router.post("/emergency", response_model=EmergencyTrigger, status_code=201)
async def trigger_emergency(
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    """Record an SOS for the calling patient"""
    require_role(current_user, Role.PATIENT, "Only patients can trigger an emergency")
    log = await services.storage.emergency_logs.trigger(current_user["id"])
    logger.warning(f"SOS triggered by patient id={current_user['id']} (log id={log['id']})")

    caretaker = None
    if current_user.get("caretaker_id") is not None:
        caretaker = await services.storage.accounts.get(current_user["caretaker_id"])
    phone = caretaker.get("phone_number") if caretaker else None
    dial_number = clean_phone_for_dial(phone)
    return {
        **log,
        "caretaker_name": caretaker["username"] if caretaker else None,
        "caretaker_phone": phone,
        "dial_uri": f"tel:{dial_number}" if dial_number else None
    }

@api_router.patch("/emergency/{log_id}/resolve", response_model=EmergencyLog)
async def resolve_emergency(
    log_id: int,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    require_role(current_user, Role.CARETAKER, "Only caretakers can resolve emergencies")
    logs = services.storage.emergency_logs
    await services.scope.authorize_record(current_user, await logs.get(log_id))
    resolved = await logs.resolve(log_id)
    logger.info(f"Emergency log id={log_id} resolved by caretaker id={current_user['id']}")
    return resolved

# ==================== FILES (MongoDB GridFS) ====================

@api_router.post("/upload-image", response_model=ImageUploaded, status_code=201)
async def upload_image(
    payload: ImageUpload,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    """Store a data-URL encoded photo and return its URL"""
    content_type, content = decode_image_data_url(payload.image_data)
    if len(content) > services.settings.max_upload_bytes:
        raise ValidationError("Image is too large")

    filename = f"{current_user['id']}_{uuid.uuid4().hex[:8]}{extension_for(content_type, '.jpg')}"
    url = await services.storage.files.put(filename, content, content_type, current_user["id"])
    return {"image_url": url}

@api_router.get("/files/{filename}")
async def get_file(filename: str, services: AppServices = Depends(get_services)):
    """Retrieve a file from MongoDB GridFS"""
    content, content_type = await services.storage.files.get(filename)
    return StreamingResponse(
        io.BytesIO(content),
        media_type=content_type,
        headers={
            "Content-Disposition": f"inline; filename={filename}",
            "Cache-Control": "public, max-age=31536000",  # Cache for 1 year
            "X-Content-Type-Options": "nosniff"
        }
    )

# ==================== VOICE ====================

@api_router.post("/text-to-speech", response_model=TTSResponse)
async def text_to_speech(
    request: TTSRequest,
    current_user: dict = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    """Convert text to speech and store the mp3"""
    audio = await services.enrichment.synthesize_speech(request.text)
    filename = f"speech_{uuid.uuid4().hex[:12]}.mp3"
    url = await services.storage.files.put(filename, audio, "audio/mpeg", current_user["id"])
    return {"audio_url": url}

# ==================== HEALTH ====================

@api_router.get("/")
async def root():
    return {"message": "Reminisce Care API"}

@api_router.get("/health")
async def health_check():
    return {"status": "healthy"}

# ==================== APP ====================

async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    return JSONResponse(
        status_code=400,
        content={"detail": first.get("msg", "Invalid input"), "field": field or None}
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.services is None:
        app.state.services = AppServices.from_settings(app.state.settings)
    services = app.state.services
    await services.startup()
    logger.info(f"Connected to MongoDB database: {services.settings.db_name}")
    try:
        yield
    finally:
        await services.shutdown()

def create_app(services: Optional[AppServices] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    app = FastAPI(title="Reminisce Care API", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    # Include the router in the main app
    app.include_router(api_router)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    return app

app = create_app()
