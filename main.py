import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import admins
import catalog
import config
import database
import downloads
import exams
import orders
import otp
from database import COL_PRODUCT, get_db, id_filter, serialize_doc
from errors import AppError, NotFound, RateLimited
from notifier import Notifier, get_notifier
from schemas import (
    ADMIN_ROLES,
    Category,
    CreateAdminRequest,
    CreateOrderRequest,
    ExamInput,
    ExamStatusUpdate,
    OtpRequest,
    OtpVerify,
    PermissionsUpdate,
    Product,
    RefreshRequest,
    StatusUpdate,
    Token,
)
from security import get_current_user, get_user, public_user, refresh_access_token, require_roles

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = database.connect()
    db = client[config.DATABASE_NAME]
    database.ensure_indexes(db)
    admins.seed_superadmin(db)
    app.state.db = db
    app.state.notifier = Notifier.from_config()
    try:
        yield
    finally:
        client.close()
        logger.info("MongoDB client closed")


app = FastAPI(title="EduStore API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

get_current_admin = require_roles(*ADMIN_ROLES)
get_current_superadmin = require_roles("SUPERADMIN")


# ---------- Error rendering ----------
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    body = {"error": exc.message}
    headers = None
    if isinstance(exc, RateLimited):
        body["retry_after"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/")
def read_root():
    return {"name": "EduStore API", "status": "ok"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    info = {"backend": "running", "database": "disconnected"}
    try:
        db.list_collection_names()
        info["database"] = "connected"
    except Exception as e:
        info["error"] = str(e)
    return info


# ---------- Auth ----------
@app.post("/api/auth/request-otp")
def request_otp(payload: OtpRequest, db: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    return otp.request_code(db, notifier, email=payload.email, phone=payload.phone)


@app.post("/api/auth/verify-otp")
def verify_otp(payload: OtpVerify, db: Database = Depends(get_db)):
    token, user = otp.verify_code(db, payload.email, payload.phone, payload.code)
    return {"token": token, "user": public_user(user)}


@app.post("/api/auth/refresh-token")
def refresh_token(payload: RefreshRequest, db: Database = Depends(get_db)):
    if not payload.token:
        raise HTTPException(status_code=400, detail="Token is required")
    return {"token": refresh_access_token(db, payload.token)}


@app.post("/api/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Database = Depends(get_db)):
    access_token = admins.login(db, form_data.username, form_data.password)
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/api/auth/me")
async def me(current=Depends(get_current_user), db: Database = Depends(get_db)):
    user = get_user(db, current["id"])
    if user is None:
        raise NotFound("User not found")
    return {"user": public_user(user)}


# ---------- Catalog ----------
@app.post("/api/admin/products", status_code=status.HTTP_201_CREATED)
async def create_product(product: Product, db: Database = Depends(get_db), _: dict = Depends(get_current_admin)):
    product_id = database.create_document(db, COL_PRODUCT, product)
    return {"id": product_id}


@app.get("/api/products")
async def list_products(category: str | None = None, db: Database = Depends(get_db)):
    query = {"in_stock": True}
    if category:
        query["category"] = category
    return [serialize_doc(p) for p in db[COL_PRODUCT].find(query).sort("created_at", -1)]


@app.get("/api/products/{product_id}")
async def get_product(product_id: str, db: Database = Depends(get_db)):
    product = db[COL_PRODUCT].find_one(id_filter(product_id))
    if not product:
        raise NotFound("Product not found")
    return serialize_doc(product)


@app.get("/api/categories")
async def list_categories(db: Database = Depends(get_db)):
    return {"categories": catalog.list_categories(db)}


@app.post("/api/admin/categories", status_code=status.HTTP_201_CREATED)
async def create_category(payload: Category, current=Depends(get_current_admin), db: Database = Depends(get_db)):
    return {"category": catalog.create_category(db, current, payload)}


@app.put("/api/admin/categories/{category_id}")
async def update_category(
    category_id: str,
    payload: Category,
    current=Depends(get_current_admin),
    db: Database = Depends(get_db),
):
    return {"category": catalog.update_category(db, current, category_id, payload)}


@app.delete("/api/admin/categories/{category_id}")
async def delete_category(category_id: str, current=Depends(get_current_admin), db: Database = Depends(get_db)):
    catalog.delete_category(db, current, category_id)
    return {"message": "Category deleted"}

# ---------- Orders ----------
@app.post("/api/orders", status_code=status.HTTP_201_CREATED)
async def create_order(payload: CreateOrderRequest, current=Depends(get_current_user), db: Database = Depends(get_db)):
    order = orders.create_order(db, current["id"], payload.items, payload.subtotal, payload.tax, payload.total)
    return {"message": "Order created successfully", "order": order}


@app.get("/api/orders/my-orders")
async def my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    return orders.list_my_orders(db, current["id"], page, limit)


@app.get("/api/orders/stats/overview")
async def order_stats(db: Database = Depends(get_db), _: dict = Depends(get_current_admin)):
    return {"stats": orders.get_stats(db)}


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"order": orders.get_order(db, current["id"], order_id)}


@app.patch("/api/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    current=Depends(get_current_admin),
    db: Database = Depends(get_db),
):
    order = orders.update_status(db, current, order_id, payload.status)
    return {"message": "Order status updated successfully", "order": order}


@app.post("/api/orders/download/{download_id}")
async def download(download_id: str, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return {"message": "Download started", "download": downloads.redeem(db, current["id"], download_id)}


# ---------- Admin ----------
@app.get("/api/admin/orders")
async def admin_list_orders(
    order_status: str | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
    _: dict = Depends(get_current_admin),
):
    return orders.list_orders(db, order_status, page, limit)


@app.get("/api/admin/permissions")
async def my_permissions(current=Depends(require_roles("ADMIN")), db: Database = Depends(get_db)):
    return admins.own_permissions(db, current)

@app.post("/api/admin/create-admin", status_code=status.HTTP_201_CREATED)
async def create_admin(payload: CreateAdminRequest, current=Depends(get_current_superadmin), db: Database = Depends(get_db)):
    return {"message": "Admin created successfully", "admin": admins.create_admin(db, current, payload)}


@app.get("/api/admin/admins")
async def list_admins(current=Depends(get_current_superadmin), db: Database = Depends(get_db)):
    return admins.list_admins(db, current)


@app.put("/api/admin/admins/{admin_id}/permissions")
async def update_admin_permissions(
    admin_id: str,
    payload: PermissionsUpdate,
    current=Depends(get_current_superadmin),
    db: Database = Depends(get_db),
):
    return admins.update_permissions(db, current, admin_id, payload)


@app.delete("/api/admin/admins/{admin_id}")
async def delete_admin(admin_id: str, current=Depends(get_current_superadmin), db: Database = Depends(get_db)):
    admins.delete_admin(db, current, admin_id)
    return {"message": "Admin deleted successfully"}


# ---------- Exams ----------
@app.get("/api/admin/exams")
async def list_exams(current=Depends(get_current_admin), db: Database = Depends(get_db)):
    return {"exams": exams.list_exams(db, current)}


@app.get("/api/admin/exams/{exam_id}")
async def get_exam(exam_id: str, current=Depends(get_current_admin), db: Database = Depends(get_db)):
    return {"exam": exams.get_exam(db, current, exam_id)}


@app.post("/api/admin/exams", status_code=status.HTTP_201_CREATED)
async def create_exam(payload: ExamInput, current=Depends(get_current_admin), db: Database = Depends(get_db)):
    return {"exam": exams.create_exam(db, current, payload)}


@app.put("/api/admin/exams/{exam_id}")
async def update_exam(
    exam_id: str,
    payload: ExamInput,
    current=Depends(get_current_admin),
    db: Database = Depends(get_db),
):
    return {"message": "Exam updated successfully", "exam": exams.update_exam(db, current, exam_id, payload)}


@app.patch("/api/admin/exams/{exam_id}/status")
async def update_exam_status(
    exam_id: str,
    payload: ExamStatusUpdate,
    current=Depends(get_current_admin),
    db: Database = Depends(get_db),
):
    exam = exams.set_exam_status(db, current, exam_id, payload.status)
    return {"message": f"Status updated to {payload.status}", "exam": exam}


@app.delete("/api/admin/exams/{exam_id}")
async def delete_exam(exam_id: str, current=Depends(get_current_admin), db: Database = Depends(get_db)):
    exams.delete_exam(db, current, exam_id)
    return {"message": "Exam deleted"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
