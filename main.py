import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
import fleet
import inventory
import recommendations
import sales
import users
from errors import ExternalServiceError, VendingError
from schemas import MAX_SLOT_AMOUNT

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_indexes()
    except PyMongoError as e:
        logger.error("Could not create indexes: %s", e)
    yield


app = FastAPI(title="Vending Fleet API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.ALLOWED_ORIGIN],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "username"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


# Error responses are always {"error": "..."}

@app.exception_handler(VendingError)
async def vending_error_handler(request: Request, exc: VendingError):
    body = {"error": exc.message}
    if isinstance(exc, ExternalServiceError) and exc.raw is not None:
        body["raw"] = exc.raw
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg', 'invalid request')}" if field else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "Storage unavailable"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Request bodies

class AuthRequest(BaseModel):
    email: str = ""
    password: str = ""


class CreateMachineRequest(BaseModel):
    keys: Optional[List[str]] = None
    id: Optional[str] = None
    location: Optional[str] = None


class AttachRequest(BaseModel):
    email: str
    id: str


class MachineIdRequest(BaseModel):
    id: str


class SaleRequest(BaseModel):
    id: str
    key: str


class AddStockRequest(BaseModel):
    id: str
    key: str
    amount: Optional[int] = Field(None, le=MAX_SLOT_AMOUNT)


class SetContentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    key: str
    name: Optional[str] = None
    original_price: Optional[float] = Field(None, ge=0, alias="originalPrice")
    retail_price: Optional[float] = Field(None, ge=0, alias="retailPrice")
    expiry_date: Optional[str] = Field(None, alias="expiryDate")
    amount: Optional[int] = Field(None, ge=0, le=MAX_SLOT_AMOUNT)


# Helper to accept either JSON or form for legacy compatibility
async def parse_auth_request(request: Request) -> AuthRequest:
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        email = (form.get("username") or form.get("email") or "").lower()
        password = form.get("password") or ""
        return AuthRequest(email=email, password=password)
    try:
        data = await request.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    return AuthRequest(email=str(data.get("email") or "").lower(), password=str(data.get("password") or ""))


def completion_client() -> recommendations.CompletionClient:
    return recommendations.get_completion_client()


machine_router = APIRouter()
user_router = APIRouter()


@app.get("/")
def read_root():
    return {"message": "Vending Fleet API"}


@app.get("/test")
def test_database():
    info = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        db = database.get_db()
        info["database"] = "✅ Connected & Working"
        info["database_name"] = db.name
        info["connection_status"] = "Connected"
        info["collections"] = db.list_collection_names()
    except PyMongoError as e:
        logger.error("Database check failed: %s", e)
        info["database"] = "⚠️ Error"
        info["connection_status"] = "Error"
    return info


# Machines
@machine_router.post("/createMachine")
def create_machine(req: CreateMachineRequest):
    machine, message = inventory.register_machine(req.id, req.keys, req.location)
    if machine is None:
        return {"message": message}
    return machine.to_response()


@machine_router.post("/addMachineToUser")
def add_machine_to_user(req: AttachRequest):
    return fleet.attach_machine(req.email, req.id)


@machine_router.get("/getMachineContent/{machine_id}")
def get_machine_content(machine_id: str):
    return inventory.get_machine(machine_id).to_response()


@machine_router.post("/addItemsToContent")
def add_items_to_content(req: AddStockRequest):
    slot = inventory.add_stock(req.id, req.key, req.amount)
    return {"message": "Added items to machine!", "slot": slot.model_dump(by_alias=True)}


@machine_router.post("/removeItemsFromContent")
def remove_items_from_content(req: SaleRequest):
    # records one sale; any quantity in the body is ignored
    receipt = sales.record_sale(req.id, req.key)
    return receipt.model_dump(mode="json", by_alias=True)


@machine_router.post("/setMachineContent")
def set_machine_content(req: SetContentRequest):
    patch = req.model_dump(exclude_unset=True, exclude_none=True, exclude={"id", "key"})
    slot = inventory.set_slot_fields(req.id, req.key, patch)
    return {"message": "Machine content has been updated!", "slot": slot.model_dump(by_alias=True)}


@machine_router.get("/getUserMachines/{email}")
def get_user_machines(email: str):
    return [machine.to_response() for machine in inventory.get_user_machines(email)]


@machine_router.post("/updateMachineStockMoney")
def update_machine_stock_money(req: MachineIdRequest):
    inventory.mark_cash_full(req.id)
    return {"message": "Machine marked for cash collection!"}


@machine_router.get("/getMachineRecommendations/{machine_id}")
def get_machine_recommendations(
    machine_id: str, client: recommendations.CompletionClient = Depends(completion_client)
):
    return recommendations.get_machine_recommendations(machine_id, client=client)


@machine_router.get("/getPerformanceMetrics/{machine_id}/{time_range}")
def get_performance_metrics(
    machine_id: str, time_range: str, client: recommendations.CompletionClient = Depends(completion_client)
):
    return recommendations.get_performance_metrics(machine_id, time_range, client=client)


# Users
@user_router.post("/signup")
async def signup(request: Request):
    auth = await parse_auth_request(request)
    return users.signup(auth.email, auth.password)


@user_router.post("/signin")
async def signin(request: Request):
    auth = await parse_auth_request(request)
    return users.signin(auth.email, auth.password)


@user_router.get("/getNotifications/{email}")
def get_notifications(email: str):
    return users.get_notifications(email)


@user_router.get("/me")
def read_current_user(user: dict = Depends(users.get_current_user)):
    return users.describe_user(user)


for prefix in ("", "/api"):
    app.include_router(machine_router, prefix=f"{prefix}/machine", tags=["machine"])
    app.include_router(user_router, prefix=f"{prefix}/user", tags=["user"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
