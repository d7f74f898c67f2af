import html
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel, EmailStr, Field

import config
from accounts import AccountService
from addresses import AddressService
from admin import AdminService
from carts import CartService
from catalog import CategoryService, ProductService
from database import db, ensure_indexes
from errors import AppError, UnauthorizedError
from notifications import EmailNotifier
from orders import OrderService
from payments import PaymentService
from reviews import ReviewService
from schemas import OrderStatus, Role
from security import Identity, decode_access_token, require_role

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    yield


app = FastAPI(title="Atom Drops Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api = APIRouter(prefix="/api/v1")

notifier = EmailNotifier()

TOKEN_COOKIE = "token"


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ----- Dependencies -----

def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def get_notifier():
    return notifier


def current_user(request: Request, authorization: Optional[str] = Header(None)) -> Identity:
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
    token = token or request.cookies.get(TOKEN_COOKIE)
    if not token:
        raise UnauthorizedError("Authentication required. Please log in.")
    return decode_access_token(token)


def require_admin(user: Identity = Depends(current_user)) -> Identity:
    return require_role(user, Role.ADMIN)


def accounts(database=Depends(get_db), mailer=Depends(get_notifier)):
    return AccountService(database, mailer)


def orders(database=Depends(get_db), mailer=Depends(get_notifier)):
    return OrderService(database, mailer)


def payments(database=Depends(get_db), mailer=Depends(get_notifier)):
    return PaymentService(database, mailer)


def admin_service(database=Depends(get_db), mailer=Depends(get_notifier)):
    return AdminService(database, mailer)


# ----- Request models -----

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    password: str = Field(..., min_length=8, max_length=128)


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    parent_id: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    parent_id: Optional[str] = None


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: int = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category_id: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category_id: Optional[str] = None


class ImageIn(BaseModel):
    url: str
    alt_text: Optional[str] = None
    is_primary: bool = False
    order: int = 0


class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=99)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=0, le=99)


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address_id: Optional[str] = None


class CheckoutRequest(BaseModel):
    shipping_address_id: Optional[str] = None


class InitPaymentRequest(BaseModel):
    order_id: str


class ReviewIn(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, min_length=10, max_length=1000)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, min_length=10, max_length=1000)


class AddressIn(BaseModel):
    full_name: str = Field(..., min_length=2)
    phone: str = Field(..., pattern=r"^01\d{9}$")
    address_line1: str = Field(..., min_length=5)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=2)
    state: str = Field(..., min_length=2)
    postal_code: str = Field(..., min_length=4)
    country: str = "Bangladesh"
    is_default: bool = False


class AddressUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=2)
    phone: Optional[str] = Field(None, pattern=r"^01\d{9}$")
    address_line1: Optional[str] = Field(None, min_length=5)
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_default: Optional[bool] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None


class RoleUpdate(BaseModel):
    role: Role


# ----- Routes -----

@app.get("/")
def root():
    return {"message": "Atom Drops Storefront API running"}


@app.get("/health")
def health():
    return {"status": "success", "message": "Atom Drops Backend is running correctly"}


@app.get("/test")
def test_database():
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "collections": [],
    }
    if db is not None:
        try:
            resp["collections"] = db.list_collection_names()[:20]
            resp["database"] = "✅ Connected & Working"
        except Exception as e:
            resp["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return resp


def _set_token_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        httponly=True,
        secure=config.FRONTEND_URL.startswith("https"),
        samesite="strict",
        max_age=config.JWT_EXPIRES_DAYS * 24 * 60 * 60,
    )


# Auth

@api.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, response: Response, service: AccountService = Depends(accounts)):
    result = service.register(payload.email, payload.password, payload.name)
    _set_token_cookie(response, result["token"])
    return {"message": "User registered successfully", "data": result}


@api.post("/auth/login")
def login(payload: LoginRequest, response: Response, service: AccountService = Depends(accounts)):
    result = service.login(payload.email, payload.password)
    _set_token_cookie(response, result["token"])
    return {"message": "Login successful", "data": result}


@api.post("/auth/logout")
def logout(response: Response):
    response.delete_cookie(TOKEN_COOKIE)
    return {"message": "Logged out successfully"}


@api.post("/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, service: AccountService = Depends(accounts)):
    return service.request_password_reset(payload.email)


@api.post("/auth/reset-password")
def reset_password(payload: ResetPasswordRequest, service: AccountService = Depends(accounts)):
    return service.reset_password(payload.token, payload.password)


@api.get("/auth/me")
def get_profile(user: Identity = Depends(current_user), service: AccountService = Depends(accounts)):
    return {"data": service.get_profile(user.user_id)}


@api.put("/auth/me")
def update_profile(payload: ProfileUpdate, user: Identity = Depends(current_user),
                   service: AccountService = Depends(accounts)):
    return {"message": "Profile updated successfully",
            "data": service.update_profile(user.user_id, payload.model_dump())}


# Categories

@api.post("/categories", status_code=201)
def create_category(payload: CategoryIn, _: Identity = Depends(require_admin), database=Depends(get_db)):
    return CategoryService(database).create_category(payload.model_dump())


@api.get("/categories")
def list_categories(include_products: bool = False, database=Depends(get_db)):
    return CategoryService(database).get_all_categories(include_products)


@api.get("/categories/slug/{slug}")
def get_category_by_slug(slug: str, database=Depends(get_db)):
    return CategoryService(database).get_category_by_slug(slug)


@api.get("/categories/{category_id}")
def get_category(category_id: str, database=Depends(get_db)):
    return CategoryService(database).get_category_by_id(category_id)


@api.get("/categories/{category_id}/products")
def get_category_products(category_id: str, page: int = 1, limit: int = 20, sort_by: str = "newest",
                          database=Depends(get_db)):
    return CategoryService(database).get_category_products(
        category_id, max(page, 1), min(max(limit, 1), 100), sort_by,
    )


@api.put("/categories/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate, _: Identity = Depends(require_admin),
                    database=Depends(get_db)):
    return CategoryService(database).update_category(category_id, payload.model_dump(exclude_unset=True))


@api.delete("/categories/{category_id}")
def delete_category(category_id: str, _: Identity = Depends(require_admin), database=Depends(get_db)):
    return CategoryService(database).delete_category(category_id)


# Products

@api.post("/products", status_code=201)
def create_product(payload: ProductIn, _: Identity = Depends(require_admin), database=Depends(get_db)):
    return ProductService(database).create_product(payload.model_dump())


@api.get("/products")
def list_products(search: Optional[str] = None, category_id: Optional[str] = None,
                  min_price: Optional[int] = None, max_price: Optional[int] = None,
                  in_stock: bool = False, sort_by: Optional[str] = None,
                  page: int = 1, limit: int = 20, database=Depends(get_db)):
    return ProductService(database).get_all_products(
        search=search, category_id=category_id, min_price=min_price, max_price=max_price,
        in_stock=in_stock, sort_by=sort_by, page=max(page, 1), limit=min(max(limit, 1), 100),
    )


@api.get("/products/slug/{slug}")
def get_product_by_slug(slug: str, database=Depends(get_db)):
    return ProductService(database).get_product_by_slug(slug)


@api.get("/products/{product_id}")
def get_product(product_id: str, database=Depends(get_db)):
    return ProductService(database).get_product_by_id(product_id)


@api.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, _: Identity = Depends(require_admin),
                   database=Depends(get_db)):
    return ProductService(database).update_product(product_id, payload.model_dump(exclude_unset=True))


@api.delete("/products/{product_id}")
def delete_product(product_id: str, _: Identity = Depends(require_admin), database=Depends(get_db)):
    return ProductService(database).delete_product(product_id)


@api.post("/products/{product_id}/images", status_code=201)
def add_product_image(product_id: str, payload: ImageIn, _: Identity = Depends(require_admin),
                      database=Depends(get_db)):
    return ProductService(database).add_product_image(product_id, payload.model_dump())


@api.delete("/products/images/{image_id}")
def delete_product_image(image_id: str, _: Identity = Depends(require_admin), database=Depends(get_db)):
    return ProductService(database).delete_product_image(image_id)


@api.patch("/products/images/{image_id}/primary")
def set_primary_image(image_id: str, _: Identity = Depends(require_admin), database=Depends(get_db)):
    return ProductService(database).set_primary_image(image_id)


# Cart

@api.get("/cart")
def get_cart(user: Identity = Depends(current_user), database=Depends(get_db)):
    return CartService(database).get_or_create_cart(user.user_id)


@api.post("/cart/items", status_code=201)
def add_to_cart(payload: AddToCartRequest, user: Identity = Depends(current_user), database=Depends(get_db)):
    return CartService(database).add_to_cart(user.user_id, payload.product_id, payload.quantity)


@api.put("/cart/items/{item_id}")
def update_cart_item(item_id: str, payload: UpdateCartItemRequest, user: Identity = Depends(current_user),
                     database=Depends(get_db)):
    return CartService(database).update_cart_item(user.user_id, item_id, payload.quantity)


@api.delete("/cart/items/{item_id}")
def remove_from_cart(item_id: str, user: Identity = Depends(current_user), database=Depends(get_db)):
    return CartService(database).remove_from_cart(user.user_id, item_id)


@api.delete("/cart")
def clear_cart(user: Identity = Depends(current_user), database=Depends(get_db)):
    return CartService(database).clear_cart(user.user_id)


# Orders

@api.post("/orders", status_code=201)
def create_order(payload: CreateOrderRequest, user: Identity = Depends(current_user),
                 service: OrderService = Depends(orders)):
    items = [i.model_dump() for i in payload.items]
    return service.create_order(user.user_id, items, payload.shipping_address_id)


@api.post("/orders/from-cart", status_code=201)
def checkout(payload: CheckoutRequest, user: Identity = Depends(current_user),
             service: OrderService = Depends(orders)):
    return service.create_order_from_cart(user.user_id, payload.shipping_address_id)


@api.get("/orders/my")
def my_orders(user: Identity = Depends(current_user), service: OrderService = Depends(orders)):
    return service.get_my_orders(user.user_id)


@api.get("/orders/{order_id}")
def get_order(order_id: str, user: Identity = Depends(current_user), service: OrderService = Depends(orders)):
    return service.get_order_by_id(user.user_id, order_id)


@api.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: Identity = Depends(current_user), service: OrderService = Depends(orders)):
    return service.cancel_order(user.user_id, order_id)


# Payments (mock provider)

@api.post("/payments/init")
def init_payment(payload: InitPaymentRequest, user: Identity = Depends(current_user),
                 service: PaymentService = Depends(payments)):
    return service.initiate_payment(user.user_id, payload.order_id)


@api.get("/payments/bkash/callback")
def payment_callback(paymentID: str, status: str = "success", service: PaymentService = Depends(payments)):
    if status in ("cancel", "failure"):
        return RedirectResponse(f"{config.FRONTEND_URL}/payment/failed?message={status}")
    try:
        service.execute_payment(paymentID)
    except AppError as e:
        logger.warning("Payment callback for %s failed: %s", paymentID, e.message)
        return RedirectResponse(f"{config.FRONTEND_URL}/payment/failed?message={quote(e.message)}")
    return RedirectResponse(f"{config.FRONTEND_URL}/payment/success?trxID={paymentID}")


@api.get("/payments/mock-bkash-page", response_class=HTMLResponse)
def mock_provider_page(paymentID: str):
    callback = "/api/v1/payments/bkash/callback"
    paymentID = html.escape(quote(paymentID, safe=""))
    return f"""
    <h1>Mock bKash Payment Page</h1>
    <p>Payment ID: {paymentID}</p>
    <button onclick="window.location.href='{callback}?paymentID={paymentID}&status=success'">
      Confirm Payment (Success)
    </button>
    <br><br>
    <button onclick="window.location.href='{callback}?paymentID={paymentID}&status=failure'">
      Cancel Payment
    </button>
    """


# Reviews

@api.post("/reviews", status_code=201)
def create_review(payload: ReviewIn, user: Identity = Depends(current_user), database=Depends(get_db)):
    return ReviewService(database).create_review(user.user_id, payload.product_id, payload.rating, payload.comment)


@api.get("/reviews/product/{product_id}")
def product_reviews(product_id: str, page: int = 1, limit: int = 10, rating: Optional[int] = None,
                    database=Depends(get_db)):
    return ReviewService(database).get_product_reviews(product_id, max(page, 1), min(max(limit, 1), 100), rating)


@api.get("/reviews/my")
def my_reviews(user: Identity = Depends(current_user), database=Depends(get_db)):
    return ReviewService(database).get_user_reviews(user.user_id)


@api.get("/reviews/{review_id}")
def get_review(review_id: str, database=Depends(get_db)):
    return ReviewService(database).get_review_by_id(review_id)


@api.put("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, user: Identity = Depends(current_user),
                  database=Depends(get_db)):
    return ReviewService(database).update_review(user.user_id, review_id, payload.model_dump(exclude_unset=True))


@api.delete("/reviews/{review_id}")
def delete_review(review_id: str, user: Identity = Depends(current_user), database=Depends(get_db)):
    return ReviewService(database).delete_review(user.user_id, review_id)


# Addresses

@api.post("/addresses", status_code=201)
def create_address(payload: AddressIn, user: Identity = Depends(current_user), database=Depends(get_db)):
    return AddressService(database).create_address(user.user_id, payload.model_dump())


@api.get("/addresses")
def list_addresses(user: Identity = Depends(current_user), database=Depends(get_db)):
    return AddressService(database).get_user_addresses(user.user_id)


@api.get("/addresses/{address_id}")
def get_address(address_id: str, user: Identity = Depends(current_user), database=Depends(get_db)):
    return AddressService(database).get_address_by_id(user.user_id, address_id)


@api.put("/addresses/{address_id}")
def update_address(address_id: str, payload: AddressUpdate, user: Identity = Depends(current_user),
                   database=Depends(get_db)):
    return AddressService(database).update_address(user.user_id, address_id, payload.model_dump(exclude_unset=True))


@api.delete("/addresses/{address_id}")
def delete_address(address_id: str, user: Identity = Depends(current_user), database=Depends(get_db)):
    return AddressService(database).delete_address(user.user_id, address_id)


# Admin

@api.get("/admin/dashboard")
def dashboard(_: Identity = Depends(require_admin), service: AdminService = Depends(admin_service)):
    return service.get_dashboard_stats()


@api.get("/admin/orders")
def admin_orders(page: int = 1, limit: int = 20, status: Optional[OrderStatus] = None, search: Optional[str] = None,
                 _: Identity = Depends(require_admin), service: AdminService = Depends(admin_service)):
    return service.get_all_orders(max(page, 1), min(max(limit, 1), 100), status.value if status else None, search)


@api.patch("/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: str, payload: OrderStatusUpdate, _: Identity = Depends(require_admin),
                              service: AdminService = Depends(admin_service)):
    return service.update_order_status(order_id, payload.status, payload.tracking_number)


@api.get("/admin/users")
def admin_users(page: int = 1, limit: int = 20, role: Optional[Role] = None, search: Optional[str] = None,
                _: Identity = Depends(require_admin), service: AdminService = Depends(admin_service)):
    return service.get_all_users(max(page, 1), min(max(limit, 1), 100), role.value if role else None, search)


@api.patch("/admin/users/{user_id}/role")
def admin_update_role(user_id: str, payload: RoleUpdate, _: Identity = Depends(require_admin),
                      service: AdminService = Depends(admin_service)):
    return service.update_user_role(user_id, payload.role)


@api.get("/admin/analytics/products")
def product_analytics(_: Identity = Depends(require_admin), service: AdminService = Depends(admin_service)):
    return service.get_product_analytics()


app.include_router(api)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
