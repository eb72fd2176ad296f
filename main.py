import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from accounts import AccountService
from cart import CartService
from catalog import ProductCatalog
from categories import CategoryDirectory
from checkout import LineItem, OrderTransactionManager
from database import Database
from errors import Forbidden, StorefrontError, Unauthenticated
from orders import OrderService
from reviews import ReviewService
from schemas import (
    CartItemIn,
    CartItemUpdate,
    CategoryIn,
    CheckoutRequest,
    FeatureIn,
    LoginInput,
    OrderStatusUpdate,
    PaymentVerification,
    ProductIn,
    ProductUpdate,
    RegisterInput,
    ReviewIn,
    TokenResponse,
    TraderRegisterInput,
    VoteIn,
)
from security import decode_token, token_for_user
from settings import Settings, load_settings
from stock import StockLedger
from traders import TraderService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: Database
    accounts: AccountService
    catalog: ProductCatalog
    categories: CategoryDirectory
    cart: CartService
    checkout: OrderTransactionManager
    orders: OrderService
    reviews: ReviewService
    traders: TraderService


def build_services(settings: Settings, db: Database) -> Services:
    cart = CartService(db)
    return Services(
        settings=settings,
        db=db,
        accounts=AccountService(db),
        catalog=ProductCatalog(db),
        categories=CategoryDirectory(db),
        cart=cart,
        checkout=OrderTransactionManager(db, StockLedger(), cart, order_number_prefix=settings.order_number_prefix),
        orders=OrderService(db),
        reviews=ReviewService(db),
        traders=TraderService(db),
    )


router = APIRouter()


# Dependencies

def get_services(request: Request) -> Services:
    return request.app.state.services


def _user_from_header(authorization: Optional[str], services: Services) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated("Not authenticated")
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token, services.settings)
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise Unauthenticated("Invalid token")
    user = services.accounts.get(user_id)
    if not user:
        raise Unauthenticated("User not found")
    return user


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return _user_from_header(authorization, services)


def get_optional_user(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Optional[Dict[str, Any]]:
    if not authorization:
        return None
    try:
        return _user_from_header(authorization, services)
    except Unauthenticated:
        return None


def require_admin(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("role") != "admin":
        raise Forbidden("Forbidden - Admin access required")
    return current_user


# Routes
@router.get("/")
def read_root():
    return {"message": "Storefront API"}


@router.get("/test")
def test_database(services: Services = Depends(get_services)):
    response = {
        "backend": "running",
        "database": "not available",
        "dialect": services.db.dialect,
        "tables": [],
    }
    try:
        if services.db.ping():
            response["database"] = "connected"
            response["tables"] = services.db.table_names()
    except Exception as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# Auth
@router.post("/auth/register", response_model=TokenResponse)
def register(payload: RegisterInput, services: Services = Depends(get_services)):
    user = services.accounts.register(payload.name, payload.email, payload.password)
    return TokenResponse(access_token=token_for_user(user, services.settings), user=jsonable_encoder(user))


@router.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginInput, services: Services = Depends(get_services)):
    user = services.accounts.authenticate(payload.email, payload.password)
    return TokenResponse(access_token=token_for_user(user, services.settings), user=jsonable_encoder(user))


@router.get("/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return current_user


@router.get("/admin/users")
def list_users(admin: dict = Depends(require_admin), services: Services = Depends(get_services)):
    items = services.accounts.list_users()
    return {"users": items, "total": len(items)}


# Traders
def _register_trader(payload: TraderRegisterInput, services: Services) -> Dict[str, Any]:
    return services.traders.register(
        payload.name,
        payload.shop_name,
        payload.email,
        payload.phone,
        payload.password,
        payload.shop_address,
        payload.shop_description,
        payload.shop_logo,
    )


@router.post("/trader", status_code=201)
def apply_as_trader(payload: TraderRegisterInput, services: Services = Depends(get_services)):
    trader = _register_trader(payload, services)
    return {
        "success": True,
        "message": "Trader application submitted successfully! You will be notified once approved.",
        "userId": trader["user_id"],
    }


@router.get("/trader")
def get_trader(
    user_id: Optional[int] = Query(default=None, alias="userId"),
    current_user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    user_id = user_id or current_user["id"]
    if current_user.get("role") != "admin" and user_id != current_user["id"]:
        raise Forbidden()
    return {"success": True, "trader": services.traders.get_by_user(user_id)}


@router.get("/admin/traders")
def list_traders(admin: dict = Depends(require_admin), services: Services = Depends(get_services)):
    return services.traders.list_all()


@router.post("/admin/traders", status_code=201)
def create_trader(
    payload: TraderRegisterInput, admin: dict = Depends(require_admin), services: Services = Depends(get_services)
):
    return {"success": True, "trader": _register_trader(payload, services)}


# Products
@router.get("/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    in_stock: Optional[bool] = None,
    sort: Optional[str] = None,
    limit: int = 20,
    page: int = 1,
    services: Services = Depends(get_services),
):
    return services.catalog.list_products(q, category, min_price, max_price, in_stock, sort, limit, page)


@router.get("/products/{product_id}")
def get_product(product_id: int, services: Services = Depends(get_services)):
    return services.catalog.get(product_id)


@router.post("/products", status_code=201)
def create_product(data: ProductIn, admin: dict = Depends(require_admin), services: Services = Depends(get_services)):
    return services.catalog.create(data.model_dump())


@router.put("/products/{product_id}")
def update_product(
    product_id: int,
    data: ProductUpdate,
    admin: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.catalog.update(product_id, data.model_dump(exclude_unset=True))


@router.delete("/products/{product_id}")
def delete_product(product_id: int, admin: dict = Depends(require_admin), services: Services = Depends(get_services)):
    services.catalog.delete(product_id)
    return {"ok": True}


@router.get("/products/{product_id}/features")
def list_features(product_id: int, services: Services = Depends(get_services)):
    return {"success": True, "features": services.catalog.features(product_id)}


@router.post("/products/{product_id}/features", status_code=201)
def add_feature(
    product_id: int,
    payload: FeatureIn,
    admin: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    feature_id = services.catalog.add_feature(product_id, payload.title, payload.description, payload.icon)
    return {"success": True, "featureId": feature_id, "message": "Feature added successfully"}


@router.delete("/products/{product_id}/features/{feature_id}")
def delete_feature(
    product_id: int,
    feature_id: int,
    admin: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    services.catalog.delete_feature(product_id, feature_id)
    return {"success": True, "message": "Feature deleted successfully"}


# Categories
@router.get("/categories")
def list_categories(services: Services = Depends(get_services)):
    return services.categories.list_all()


@router.get("/categories/featured")
def featured_categories(services: Services = Depends(get_services)):
    return services.categories.featured()


@router.get("/categories/{slug}")
def get_category(slug: str, services: Services = Depends(get_services)):
    return services.categories.get(slug)


@router.get("/categories/{slug}/products")
def category_products(slug: str, services: Services = Depends(get_services)):
    return services.categories.products(slug)


@router.post("/categories", status_code=201)
def create_category(payload: CategoryIn, admin: dict = Depends(require_admin), services: Services = Depends(get_services)):
    return services.categories.create(**payload.model_dump())


# Reviews
@router.get("/products/{product_id}/reviews")
def list_reviews(
    product_id: int,
    page: int = 1,
    limit: int = 10,
    sort: str = "newest",
    viewer: Optional[dict] = Depends(get_optional_user),
    services: Services = Depends(get_services),
):
    return services.reviews.list_for_product(product_id, page, limit, sort, viewer["id"] if viewer else None)


@router.post("/products/{product_id}/reviews", status_code=201)
def submit_review(
    product_id: int,
    payload: ReviewIn,
    current_user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = services.reviews.submit(product_id, current_user["id"], payload.rating, payload.title, payload.comment)
    return {"message": "Review submitted successfully", **result}


@router.post("/reviews/{review_id}/vote")
def vote_review(
    review_id: int,
    payload: VoteIn,
    current_user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    action = services.reviews.vote(review_id, current_user["id"], payload.type)
    return {"message": "Vote recorded successfully", "action": action}


# Cart
@router.get("/cart")
def get_cart(current_user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    return services.cart.get_cart(current_user["id"])


@router.get("/cart/snapshot")
def cart_snapshot(current_user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    lines = services.cart.snapshot(current_user["id"])
    return {
        "items": [
            {"productId": line.product_id, "quantity": line.quantity, "unitPrice": float(line.unit_price)}
            for line in lines
        ]
    }


@router.post("/cart")
def add_to_cart(item: CartItemIn, current_user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    services.cart.add_item(current_user["id"], item.product_id, item.quantity)
    return {"success": True, "message": "Item added to cart"}


@router.patch("/cart")
def update_cart(
    item: CartItemUpdate, current_user: dict = Depends(get_current_user), services: Services = Depends(get_services)
):
    services.cart.update_item(current_user["id"], item.product_id, item.quantity)
    return {"success": True, "message": "Cart updated"}


@router.delete("/cart/items/{product_id}")
def remove_from_cart(
    product_id: int, current_user: dict = Depends(get_current_user), services: Services = Depends(get_services)
):
    services.cart.remove_item(current_user["id"], product_id)
    return {"success": True, "message": "Item removed from cart"}


@router.delete("/cart")
def clear_cart(current_user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    services.cart.clear(current_user["id"])
    return {"success": True}


# Checkout & orders
@router.post("/checkout", status_code=201)
def checkout(
    payload: CheckoutRequest,
    idempotency_key: Optional[str] = Header(default=None),
    current_user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    if payload.items is None:
        line_items = services.checkout.line_items_from_cart(current_user["id"])
    else:
        line_items = [LineItem(i.product_id, i.quantity, i.price) for i in payload.items]
    placed = services.checkout.place_order(
        current_user["id"],
        line_items,
        payload.shipping_address,
        payload.payment_method,
        payload.total_amount,
        payload.email,
        idempotency_key=idempotency_key,
        payment_verification_url=payload.bank_receipt_url,
    )
    return {
        "success": True,
        "orderId": placed.order_id,
        "orderNumber": placed.order_number,
        "message": "Order placed successfully",
        "clearCart": True,
        "replayed": placed.replayed,
    }


@router.get("/orders/my-orders")
def my_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    current_user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    items = services.orders.list_for_user(current_user["id"], status, payment_status)
    return {"success": True, "orders": items, "total": len(items)}


@router.get("/orders/{order_id}")
def get_order(order_id: int, current_user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"success": True, "order": services.orders.get_order(order_id, current_user)}


@router.patch("/orders/{order_id}")
def update_order(
    order_id: int,
    payload: OrderStatusUpdate,
    admin: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    order = services.orders.update_status(order_id, payload.model_dump(exclude_unset=True))
    return {"success": True, "message": "Order updated successfully", "order": order}


@router.get("/admin/orders")
def admin_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    admin: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    items = services.orders.list_all(status, payment_status)
    return {"success": True, "orders": items, "total": len(items)}


@router.patch("/admin/orders/{order_id}/verify-payment")
def verify_payment(
    order_id: int,
    payload: PaymentVerification,
    admin: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    order = services.orders.verify_payment(order_id, payload.verified, payload.notes)
    outcome = "verified" if payload.verified else "rejected"
    return {"success": True, "message": f"Payment {outcome} successfully", "order": order}


# Errors
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    db = db or Database.from_url(settings.database_url, echo=settings.sql_echo)
    db.create_schema()
    services = build_services(settings, db)
    if settings.admin_email and settings.admin_password:
        services.accounts.ensure_admin(settings.admin_email, settings.admin_password, settings.admin_name)

    app = FastAPI(title="Storefront API")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
