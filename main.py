import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
import jwt
from passlib.context import CryptContext
from pymongo.errors import PyMongoError

import database
from clusters import ClusterEngine
from database import create_document, id_filter, serialize, utcnow
from errors import MarketplaceError
from events import Broadcaster
from lifecycle import ListingLifecycle
from pricing import PriceDecayScheduler
from schemas import User as UserSchema, GeoPoint, Role

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("marketplace")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALGO = "HS256"
TOKEN_EXPIRE_MIN = 60 * 24
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
WS_MAX_PENDING_EVENTS = int(os.getenv("WS_MAX_PENDING_EVENTS", 100))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer()

broadcaster = Broadcaster()


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if database.db is not None:
        scheduler = PriceDecayScheduler(database.db, broadcaster)
        scheduler.start()
    else:
        logger.warning("Database not configured; price decay scheduler not started")
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop(timeout=5)


app = FastAPI(title="Surplus Rescue Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    body: Dict[str, Any] = {"detail": exc.message, "error": type(exc).__name__}
    fields = getattr(exc, "fields", None)
    if fields:
        body["fields"] = fields
    return JSONResponse(status_code=exc.status_code, content=body)


# ------------------ Dependencies ------------------

def get_db():
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return database.db


def get_lifecycle(db=Depends(get_db)) -> ListingLifecycle:
    return ListingLifecycle(db, broadcaster)


# ------------------ Auth ------------------

class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: Role = "consumer"
    location: Optional[GeoPoint] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


def create_token(user: Dict[str, Any]) -> str:
    payload = {
        "sub": str(user.get("_id")),
        "role": user["role"],
        "exp": datetime.now(timezone.utc) + timedelta(minutes=TOKEN_EXPIRE_MIN),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGO)


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security), db=Depends(get_db)):
    token = credentials.credentials
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["users"].find_one(id_filter(user_id))
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_role(roles: List[str]):
    def checker(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"User role '{user.get('role')}' not authorized. Required: {', '.join(roles)}",
            )
        return user

    return checker


@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    email = payload.email.lower()
    if db["users"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User already exists")

    user_doc = UserSchema(
        name=payload.name,
        email=email,
        password_hash=pwd_context.hash(payload.password),
        role=payload.role,
        location=payload.location,
        created_at=utcnow(),
    ).model_dump()

    user_id = create_document("users", user_doc, database=db)
    user_doc["_id"] = user_id
    logger.info("Registered %s user %s", payload.role, user_id)
    return TokenResponse(token=create_token(user_doc), user=serialize(user_doc))


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, db=Depends(get_db)):
    email = payload.email.lower()
    user = db["users"].find_one({"email": email})
    if not user or not pwd_context.verify(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenResponse(token=create_token(user), user=serialize(user))


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return serialize(user)


# ------------------ Listings ------------------

class ListingCreate(BaseModel):
    # all optional so missing fields are reported by the lifecycle validation
    name: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    price_per_unit: Optional[float] = None
    initial_price: Optional[float] = None
    expiry_window_hours: Optional[float] = None
    free_at: Optional[datetime] = None
    location: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    image_url: Optional[str] = None


class CollectRequest(BaseModel):
    listing_ids: List[str] = []


@app.post("/api/listings", status_code=201)
def create_listing(
    payload: ListingCreate,
    user=Depends(require_role(["donor"])),
    lifecycle: ListingLifecycle = Depends(get_lifecycle),
):
    return lifecycle.create(str(user["_id"]), payload.model_dump(exclude_none=True))


@app.get("/api/listings")
def list_listings(
    category: Optional[str] = None,
    donor: Optional[str] = None,
    claimed_by: Optional[str] = None,
    id: Optional[str] = None,
    lifecycle: ListingLifecycle = Depends(get_lifecycle),
):
    if id:
        return [lifecycle.get(id)]
    if donor:
        return lifecycle.listings_for_donor(donor)
    if claimed_by:
        return lifecycle.listings_for_claimant(claimed_by)
    return lifecycle.active_listings(category)


@app.get("/api/listings/clusters")
def get_clusters(db=Depends(get_db)):
    clusters = ClusterEngine(db).compute()
    return [c.model_dump() for c in clusters]


@app.post("/api/listings/collect")
def collect_listings(
    payload: CollectRequest,
    user=Depends(require_role(["organization"])),
    lifecycle: ListingLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.collect(payload.listing_ids, str(user["_id"]))
    return {
        "message": "Listings collected successfully",
        "collected_ids": result.collected_ids,
        "count": result.count,
        "requested": result.requested,
        "impact": {"co2_saved": result.co2_saved, "meals_saved": result.meals_saved},
    }


@app.post("/api/listings/{listing_id}/claim")
def claim_listing(
    listing_id: str,
    user=Depends(require_role(["consumer", "donor"])),
    lifecycle: ListingLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.claim(listing_id, str(user["_id"]))
    return {
        "message": "Listing claimed successfully",
        "otp": result.otp,
        "listing": result.listing,
        "impact": {"co2_saved": result.co2_saved},
    }


# ------------------ Real-time events ------------------

@app.websocket("/ws")
async def events_socket(websocket: WebSocket):
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=WS_MAX_PENDING_EVENTS)

    def enqueue(message: Dict[str, Any]) -> None:
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Websocket client is behind, dropping %s event", message["event"])

    def forward(event: str, payload: Any) -> None:
        # publishers run in worker threads and the decay thread
        loop.call_soon_threadsafe(enqueue, {"event": event, "data": jsonable_encoder(payload)})

    unsubscribe = broadcaster.subscribe(forward)
    await websocket.accept()

    async def pump():
        while True:
            await websocket.send_json(await queue.get())

    sender = asyncio.create_task(pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        sender.cancel()
        [outcome] = await asyncio.gather(sender, return_exceptions=True)
        if isinstance(outcome, Exception):
            logger.warning("Websocket sender stopped: %s", outcome)


# ------------------ Health ------------------

@app.get("/")
def read_root():
    return {"message": "Surplus Rescue API is running", "subscribers": broadcaster.subscriber_count}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }

    db = database.db
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name if hasattr(db, "name") else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
