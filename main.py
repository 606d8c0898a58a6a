import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import BackgroundTasks, Cookie, Depends, FastAPI, File, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware

import accounts
import addresses
import catalog
import config
import notifications
import orders
import payments
import promotions
import storage
from database import db, ensure_indexes
from errors import AuthorizationError, ValidationError, register_exception_handlers
from responses import page_params, pagination, success
from schemas import (
    AddressCreateBody,
    AddressUpdateBody,
    BrandCreateBody,
    BrandUpdateBody,
    BulkProductUpdateBody,
    CategoryCreateBody,
    CategoryOrderBody,
    CategoryUpdateBody,
    ChangePasswordBody,
    CreateAdminBody,
    CustomerCreateBody,
    FeatureBody,
    FeatureOrderBody,
    ForgotPasswordBody,
    GenerateCodeBody,
    LoginBody,
    OrderCancelBody,
    OrderCreateBody,
    OrderStatusBody,
    OrderUpdateBody,
    OtpRequestBody,
    OtpVerifyBody,
    ProductCreateBody,
    ProductDuplicateBody,
    ProductUpdateBody,
    ProfileUpdateBody,
    PromoApplyBody,
    PromoCodeCreateBody,
    PromoCodeUpdateBody,
    PromoDuplicateBody,
    PromoValidateBody,
    ReasonBody,
    RefreshTokenBody,
    RefundBody,
    RegisterBody,
    ResetPasswordBody,
    StatusBody,
    StockBody,
    TransactionCompleteBody,
    TransactionCreateBody,
    TransactionFailBody,
    TransactionUpdateBody,
)
from security import get_current_user, is_admin, require_admin

config.configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes()
    logger.info("E-commerce admin API started (%s)", config.ENVIRONMENT)
    yield


app = FastAPI(title="E-commerce Admin Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info("%s %s %d %.1fms", request.method, request.url.path, response.status_code,
                (time.perf_counter() - started) * 1000)
    return response


# ----------------------- Utils -----------------------
REFRESH_COOKIE = "refresh_token"


def set_refresh_cookie(response: Response, refresh_token: str):
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=config.JWT_REFRESH_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=config.ENVIRONMENT == "production",
        samesite="strict",
    )


def auth_response(response: Response, user: dict, message: str) -> dict:
    payload = accounts.token_payload(user)
    set_refresh_cookie(response, payload["refresh_token"])
    return success(payload, message)


def split_ids(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "E-commerce Admin API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "s3": "✅ Configured" if config.s3_enabled() else "❌ Not Configured",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/api/auth/register", status_code=201)
def register(body: RegisterBody, response: Response):
    user = accounts.register_user(body)
    return auth_response(response, user, "User registered successfully")


def _login(body: LoginBody, response: Response, background_tasks: BackgroundTasks, role: Optional[str]):
    user, is_phone = accounts.login(body.identifier, body.password, role)
    background_tasks.add_task(accounts.send_login_sms, user, is_phone)
    return auth_response(response, user, "Login successful")


@app.post("/api/auth/login")
def login(body: LoginBody, response: Response, background_tasks: BackgroundTasks):
    return _login(body, response, background_tasks, body.role)


@app.post("/api/auth/admin/login")
def admin_login(body: LoginBody, response: Response, background_tasks: BackgroundTasks):
    return _login(body, response, background_tasks, "admin")


@app.post("/api/auth/customer/login")
def customer_login(body: LoginBody, response: Response, background_tasks: BackgroundTasks):
    return _login(body, response, background_tasks, "user")


@app.post("/api/auth/customer/request-otp")
def request_otp(body: OtpRequestBody):
    return success(accounts.request_customer_otp(body), "OTP sent successfully")


@app.post("/api/auth/customer/verify-otp")
def verify_otp(body: OtpVerifyBody, response: Response):
    user = accounts.verify_customer_otp(body)
    return auth_response(response, user, "OTP verified successfully")


@app.post("/api/auth/create-admin", status_code=201)
def create_admin(body: CreateAdminBody, response: Response):
    user = accounts.create_admin(body)
    return auth_response(response, user, "Admin user created successfully")


@app.post("/api/auth/refresh-token")
def refresh_token(response: Response, body: Optional[RefreshTokenBody] = None,
                  refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE)):
    token = (body.refresh_token if body else None) or refresh_cookie
    access_token, new_refresh = accounts.refresh_tokens(token)
    set_refresh_cookie(response, new_refresh)
    return success({"access_token": access_token, "refresh_token": new_refresh}, "Token refreshed successfully")


@app.post("/api/auth/forgot-password")
def forgot_password(body: ForgotPasswordBody):
    accounts.forgot_password(body.email)
    return success(message="If an account with that email exists, a password reset link has been sent.")


@app.put("/api/auth/reset-password")
def reset_password(body: ResetPasswordBody, response: Response):
    user = accounts.reset_password(body.token, body.password)
    return auth_response(response, user, "Password reset successful")


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return success({"user": accounts.public_user(user)}, "User profile retrieved successfully")


@app.put("/api/auth/update-profile")
def update_profile(body: ProfileUpdateBody, user=Depends(get_current_user)):
    updated = accounts.update_profile(user, body)
    return success({"user": accounts.public_user(updated)}, "Profile updated successfully")


@app.put("/api/auth/change-password")
def change_password(body: ChangePasswordBody, response: Response, user=Depends(get_current_user)):
    updated = accounts.change_password(user, body.current_password, body.new_password)
    return auth_response(response, updated, "Password changed successfully")


@app.put("/api/auth/deactivate")
def deactivate(body: ReasonBody, response: Response, user=Depends(get_current_user)):
    result = accounts.deactivate_account(user["_id"], body.reason)
    response.delete_cookie(REFRESH_COOKIE)
    return success(result, "Account deactivated successfully")


@app.post("/api/auth/logout")
def logout(response: Response, user=Depends(get_current_user)):
    response.delete_cookie(REFRESH_COOKIE)
    logger.info("User logged out: %s", user["username"])
    return success(message="Logged out successfully")


@app.get("/api/auth/admin/users")
def admin_users(page: int = 1, limit: int = 10, search: Optional[str] = None, role: Optional[str] = None,
                is_active: Optional[bool] = None, admin=Depends(require_admin)):
    page, limit, skip = page_params(page, limit)
    users, total = accounts.list_users(skip, limit, search, role, is_active)
    return success(users, "Users retrieved successfully", pagination(page, limit, total))


@app.get("/api/auth/admin/users/stats")
def admin_user_stats(admin=Depends(require_admin)):
    return success(accounts.user_stats(), "User statistics retrieved successfully")


@app.get("/api/auth/admin/users/{user_id}")
def admin_get_user(user_id: str, admin=Depends(require_admin)):
    return success({"user": accounts.public_user(accounts.get_user(user_id))}, "User retrieved successfully")


@app.put("/api/auth/admin/reactivate/{user_id}")
def admin_reactivate(user_id: str, body: ReasonBody, admin=Depends(require_admin)):
    return success(accounts.reactivate_account(user_id, admin, body.reason), "User reactivated successfully")


# ----------------------- Customers -----------------------
@app.post("/api/customers", status_code=201)
def create_customer(body: CustomerCreateBody, admin=Depends(require_admin)):
    customer = accounts.create_customer(body)
    return success({"customer": accounts.public_user(customer)}, "Customer created successfully")


@app.get("/api/customers")
def list_customers(page: int = 1, limit: int = 10, search: Optional[str] = None, is_active: Optional[bool] = None,
                   admin=Depends(require_admin)):
    page, limit, skip = page_params(page, limit)
    customers, total = accounts.list_users(skip, limit, search, "user", is_active)
    return success(customers, "Customers retrieved successfully", pagination(page, limit, total))


@app.get("/api/customers/stats")
def customer_stats(admin=Depends(require_admin)):
    return success(accounts.customer_stats(), "Customer statistics retrieved successfully")


@app.get("/api/customers/search")
def search_customers(q: str = "", page: int = 1, limit: int = 10, admin=Depends(require_admin)):
    term = q.strip()
    if len(term) < 2:
        raise ValidationError("Search term must be at least 2 characters long")
    page, limit, skip = page_params(page, limit)
    customers, total = accounts.list_users(skip, limit, term, "user")
    return success(customers, "Customer search results", pagination(page, limit, total))


@app.get("/api/customers/{customer_id}")
def get_customer(customer_id: str, admin=Depends(require_admin)):
    customer = accounts.get_customer(customer_id)
    return success({"customer": accounts.public_user(customer)}, "Customer details retrieved successfully")


@app.put("/api/customers/{customer_id}")
def update_customer(customer_id: str, body: ProfileUpdateBody, admin=Depends(require_admin)):
    customer = accounts.update_customer(customer_id, body)
    return success({"customer": accounts.public_user(customer)}, "Customer updated successfully")


@app.patch("/api/customers/{customer_id}/deactivate")
def deactivate_customer(customer_id: str, body: Optional[ReasonBody] = None, admin=Depends(require_admin)):
    result = accounts.deactivate_customer(customer_id, admin, body.reason if body else None)
    return success(result, "Customer account deactivated successfully")


@app.patch("/api/customers/{customer_id}/reactivate")
def reactivate_customer(customer_id: str, body: Optional[ReasonBody] = None, admin=Depends(require_admin)):
    result = accounts.reactivate_customer(customer_id, admin, body.reason if body else None)
    return success(result, "Customer account reactivated successfully")


# ----------------------- Brands -----------------------
@app.post("/api/brands", status_code=201)
def create_brand(body: BrandCreateBody, admin=Depends(require_admin)):
    return success(catalog.create_brand(body), "Brand created successfully")


@app.get("/api/brands")
def list_brands(is_active: Optional[bool] = None, search: Optional[str] = None):
    brands = catalog.list_brands(is_active, search)
    return success(brands, "Brands retrieved successfully", {"count": len(brands)})


@app.get("/api/brands/{brand_id}")
def get_brand(brand_id: str):
    return success(catalog.get_brand(brand_id), "Brand retrieved successfully")


@app.put("/api/brands/{brand_id}")
def update_brand(brand_id: str, body: BrandUpdateBody, admin=Depends(require_admin)):
    return success(catalog.update_brand(brand_id, body), "Brand updated successfully")


@app.patch("/api/brands/{brand_id}/status")
def brand_status(brand_id: str, body: StatusBody, admin=Depends(require_admin)):
    brand = catalog.set_brand_status(brand_id, body.is_active)
    return success(brand, f"Brand {'activated' if body.is_active else 'deactivated'} successfully")


@app.delete("/api/brands/{brand_id}")
def delete_brand(brand_id: str, admin=Depends(require_admin)):
    catalog.delete_brand(brand_id)
    return success(message="Brand deleted successfully")


# ----------------------- Categories -----------------------
@app.post("/api/categories", status_code=201)
def create_category(body: CategoryCreateBody, admin=Depends(require_admin)):
    return success(catalog.create_category(body), "Category created successfully")


@app.get("/api/categories")
def list_categories(format: str = "list", is_active: Optional[bool] = None, page: int = 1, limit: int = 0):
    skip = 0
    if limit:
        page, limit, skip = page_params(page, limit)
    categories, total = catalog.list_categories(format, is_active, skip, limit)
    meta = pagination(page, limit, total) if limit and format != "tree" else {"count": total}
    return success(categories, "Categories retrieved successfully", meta)


@app.get("/api/categories/tree")
def category_tree():
    return success(catalog.category_tree(), "Category tree retrieved successfully")


@app.get("/api/categories/parents")
def parent_categories(is_active: Optional[bool] = True):
    return success(catalog.parent_categories(is_active), "Parent categories retrieved successfully")


@app.put("/api/categories/order")
def category_order(body: CategoryOrderBody, admin=Depends(require_admin)):
    return success(catalog.update_category_order(body.categories), "Category order updated successfully")


@app.patch("/api/categories/{category_id}/status")
def category_status(category_id: str, admin=Depends(require_admin)):
    category = catalog.toggle_category_status(category_id)
    state = "activated" if category.get("is_active") else "deactivated"
    return success(category, f"Category {state} successfully")


@app.get("/api/categories/{category_id}")
def get_category(category_id: str):
    return success(catalog.get_category(category_id), "Category retrieved successfully")


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdateBody, admin=Depends(require_admin)):
    return success(catalog.update_category(category_id, body), "Category updated successfully")


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, admin=Depends(require_admin)):
    catalog.delete_category(category_id)
    return success(message="Category deleted successfully")


@app.get("/api/category-products/{slug}")
def category_products(slug: str, sort: Optional[str] = None):
    result = catalog.products_by_category_slug(slug, sort)
    return success(result, "Category products retrieved successfully", {"count": len(result["products"])})


# ----------------------- Products -----------------------
@app.get("/api/products")
def list_products(status: Optional[str] = "active", categories: Optional[str] = None,
                  brand_id: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, stock_status: Optional[str] = None,
                  is_published: Optional[bool] = None, is_low_stock: bool = False,
                  search: Optional[str] = None, sort: Optional[str] = None):
    products = catalog.list_products(status, split_ids(categories), brand_id, min_price, max_price, stock_status,
                                     is_published, is_low_stock, search, sort=sort)
    return success(products, "Products retrieved successfully", {"count": len(products)})


@app.get("/api/products/category/{category_id}")
def products_by_category(category_id: str, sort: Optional[str] = None):
    products = catalog.products_by_category(category_id, sort)
    return success(products, "Products retrieved successfully", {"count": len(products)})


@app.get("/api/products/brand/{brand_id}")
def products_by_brand(brand_id: str, sort: Optional[str] = None):
    products = catalog.products_by_brand(brand_id, sort)
    return success(products, "Products retrieved successfully", {"count": len(products)})


@app.get("/api/products/featured")
def featured_products(category: Optional[str] = None, brand: Optional[str] = None,
                      min_price: Optional[float] = None, max_price: Optional[float] = None,
                      search: Optional[str] = None, sort: str = "featured_order"):
    products = catalog.featured_products(category, brand, min_price, max_price, search, sort)
    return success(products, "Featured products retrieved successfully", {"count": len(products)})


@app.get("/api/products/statistics")
def product_statistics(admin=Depends(require_admin)):
    return success(catalog.product_statistics(), "Product statistics retrieved successfully")


@app.get("/api/products/low-stock")
def low_stock(admin=Depends(require_admin)):
    products = catalog.low_stock_products()
    return success(products, "Low stock products retrieved successfully", {"count": len(products)})


@app.get("/api/products/out-of-stock")
def out_of_stock(admin=Depends(require_admin)):
    products = catalog.out_of_stock_products()
    return success(products, "Out of stock products retrieved successfully", {"count": len(products)})


@app.get("/api/products/admin")
def admin_products(status: Optional[str] = "all", categories: Optional[str] = None,
                   brand_id: Optional[str] = None, min_price: Optional[float] = None,
                   max_price: Optional[float] = None, stock_status: Optional[str] = None,
                   is_published: Optional[bool] = None, is_low_stock: bool = False,
                   search: Optional[str] = None, include_deleted: bool = False, deleted_only: bool = False,
                   sort: Optional[str] = None, admin=Depends(require_admin)):
    products = catalog.list_products(status, split_ids(categories), brand_id, min_price, max_price, stock_status,
                                     is_published, is_low_stock, search, include_deleted, deleted_only, sort)
    return success(products, "Products retrieved successfully", {"count": len(products)})


@app.get("/api/products/admin/featured")
def admin_featured(admin=Depends(require_admin)):
    products = catalog.admin_featured_products()
    return success(products, "Featured products retrieved successfully", {"count": len(products)})


@app.put("/api/products/bulk")
def bulk_update(body: BulkProductUpdateBody, admin=Depends(require_admin)):
    result = catalog.bulk_update_products(body.updates, admin)
    return success(result, f"Bulk update completed: {len(result['successful'])} successful, "
                           f"{len(result['failed'])} failed")


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreateBody, admin=Depends(require_admin)):
    return success(catalog.create_product(body, admin), "Product created successfully")


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    return success(catalog.get_product(product_id), "Product retrieved successfully")


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, admin=Depends(require_admin)):
    return success(catalog.update_product(product_id, body, admin), "Product updated successfully")


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin=Depends(require_admin)):
    result = catalog.delete_product(product_id, admin)
    message = "Product already deleted" if result["already_deleted"] else "Product deleted successfully"
    return success(result, message)


@app.post("/api/products/{product_id}/duplicate", status_code=201)
def duplicate_product(product_id: str, body: Optional[ProductDuplicateBody] = None, admin=Depends(require_admin)):
    body = body or ProductDuplicateBody()
    product = catalog.duplicate_product(product_id, admin, body.sku, body.product_name)
    return success(product, "Product duplicated successfully")


@app.patch("/api/products/{product_id}/stock")
def update_stock(product_id: str, body: StockBody, admin=Depends(require_admin)):
    return success(catalog.update_stock(product_id, body.stock, admin), "Product stock updated successfully")


@app.patch("/api/products/{product_id}/feature")
def feature_product(product_id: str, body: Optional[FeatureBody] = None, admin=Depends(require_admin)):
    body = body or FeatureBody()
    product = catalog.set_featured(product_id, admin, body.order, body.featured_until)
    return success(product, "Product set as featured successfully")


@app.patch("/api/products/{product_id}/unfeature")
def unfeature_product(product_id: str, admin=Depends(require_admin)):
    return success(catalog.unset_featured(product_id, admin), "Product removed from featured successfully")


@app.patch("/api/products/{product_id}/feature-order")
def feature_order(product_id: str, body: FeatureOrderBody, admin=Depends(require_admin)):
    product = catalog.update_featured_order(product_id, body.order, admin)
    return success(product, "Featured order updated successfully")


# ----------------------- Addresses -----------------------
@app.get("/api/addresses")
def list_addresses(address_type: Optional[str] = None, is_default: Optional[bool] = None,
                   user=Depends(get_current_user)):
    items = addresses.list_addresses(user, address_type, is_default)
    return success(items, "Addresses retrieved successfully", {"count": len(items)})


@app.get("/api/addresses/default")
def default_address(user=Depends(get_current_user)):
    return success(addresses.get_default(user), "Default address retrieved successfully")


@app.get("/api/addresses/type/{address_type}")
def addresses_by_type(address_type: str, user=Depends(get_current_user)):
    items = addresses.addresses_by_type(user, address_type)
    return success(items, f"{address_type.capitalize()} addresses retrieved successfully", {"count": len(items)})


@app.get("/api/addresses/{address_id}")
def get_address(address_id: str, user=Depends(get_current_user)):
    return success(addresses.get_address(address_id, user), "Address retrieved successfully")


@app.post("/api/addresses", status_code=201)
def create_address(body: AddressCreateBody, user=Depends(get_current_user)):
    return success(addresses.create_address(body, user), "Address created successfully")


@app.put("/api/addresses/{address_id}")
def update_address(address_id: str, body: AddressUpdateBody, user=Depends(get_current_user)):
    return success(addresses.update_address(address_id, body, user), "Address updated successfully")


@app.patch("/api/addresses/{address_id}/set-default")
def set_default_address(address_id: str, user=Depends(get_current_user)):
    return success(addresses.set_default(address_id, user), "Default address updated successfully")


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user)):
    addresses.delete_address(address_id, user)
    return success(message="Address deleted successfully")


# ----------------------- Orders -----------------------
@app.get("/api/orders/my-orders")
def my_orders(status: Optional[str] = None, date_from: Optional[datetime] = None,
              date_to: Optional[datetime] = None, user=Depends(get_current_user)):
    items = orders.my_orders(user, status, date_from, date_to)
    return success(items, "Orders retrieved successfully", {"count": len(items)})


@app.get("/api/orders/admin/stats")
def order_stats(admin=Depends(require_admin)):
    return success(orders.order_stats(), "Order statistics retrieved successfully")


@app.post("/api/orders", status_code=201)
def create_order(body: OrderCreateBody, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    order = orders.create_order(body, user)
    background_tasks.add_task(notifications.notify_new_order, order, user)
    return success(order, "Order created successfully")


@app.get("/api/orders")
def list_orders(page: int = 1, limit: int = 10, status: Optional[str] = None,
                payment_status: Optional[str] = None, customer: Optional[str] = None,
                date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                search: Optional[str] = None, sort_by: str = "created_at", sort_order: str = "desc",
                user=Depends(get_current_user)):
    page, limit, skip = page_params(page, limit)
    items, total = orders.list_orders(user, skip, limit, status, payment_status, customer, date_from, date_to,
                                      search, sort_by, sort_order)
    return success(items, "Orders retrieved successfully", pagination(page, limit, total))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    return success(orders.get_order(order_id, user), "Order retrieved successfully")


@app.put("/api/orders/{order_id}")
def update_order(order_id: str, body: OrderUpdateBody, user=Depends(get_current_user)):
    return success(orders.update_order(order_id, body, user), "Order updated successfully")


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusBody, background_tasks: BackgroundTasks,
                        admin=Depends(require_admin)):
    order = orders.update_status(order_id, body.status, admin, body.notes, body.tracking_number)
    background_tasks.add_task(notifications.notify_status_update, order, orders.order_customer(order), body.status)
    return success(order, "Order status updated successfully")


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, background_tasks: BackgroundTasks, body: Optional[OrderCancelBody] = None,
                 user=Depends(get_current_user)):
    reason = body.reason if body else None
    order = orders.cancel_order(order_id, user, reason)
    background_tasks.add_task(notifications.notify_cancellation, order, orders.order_customer(order), reason)
    return success(order, "Order cancelled successfully")


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, admin=Depends(require_admin)):
    orders.delete_order(order_id)
    return success(message="Order deleted successfully")


# ----------------------- Transactions -----------------------
@app.get("/api/transactions/my-transactions")
def my_transactions(status: Optional[str] = None, date_from: Optional[datetime] = None,
                    date_to: Optional[datetime] = None, user=Depends(get_current_user)):
    items = payments.my_transactions(user, status, date_from, date_to)
    return success(items, "Transactions retrieved successfully", {"count": len(items)})


@app.get("/api/transactions/admin/all")
def all_transactions(status: Optional[str] = None, payment_method: Optional[str] = None,
                     customer: Optional[str] = None, date_from: Optional[datetime] = None,
                     date_to: Optional[datetime] = None, search: Optional[str] = None,
                     sort_by: str = "transaction_date", sort_order: str = "desc", admin=Depends(require_admin)):
    items = payments.list_transactions(admin, status, payment_method, customer, date_from, date_to, search,
                                       sort_by, sort_order)
    return success(items, "Transactions retrieved successfully", {"count": len(items)})


@app.get("/api/transactions/admin/stats")
def transaction_stats(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                      admin=Depends(require_admin)):
    return success(payments.transaction_stats(start_date, end_date), "Transaction statistics retrieved successfully")


@app.post("/api/transactions", status_code=201)
def create_transaction(body: TransactionCreateBody, user=Depends(get_current_user)):
    return success(payments.create_transaction(body, user), "Transaction created successfully")


@app.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: str, user=Depends(get_current_user)):
    return success(payments.get_transaction(transaction_id, user), "Transaction retrieved successfully")


@app.put("/api/transactions/{transaction_id}")
def update_transaction(transaction_id: str, body: TransactionUpdateBody, admin=Depends(require_admin)):
    return success(payments.update_transaction(transaction_id, body), "Transaction updated successfully")


@app.patch("/api/transactions/{transaction_id}/complete")
def complete_transaction(transaction_id: str, body: Optional[TransactionCompleteBody] = None,
                         admin=Depends(require_admin)):
    body = body or TransactionCompleteBody()
    transaction = payments.complete_transaction(transaction_id, admin, body.gateway_transaction_id,
                                                body.gateway_response)
    return success(transaction, "Transaction marked as completed successfully")


@app.patch("/api/transactions/{transaction_id}/fail")
def fail_transaction(transaction_id: str, body: Optional[TransactionFailBody] = None,
                     admin=Depends(require_admin)):
    body = body or TransactionFailBody()
    transaction = payments.fail_transaction(transaction_id, admin, body.gateway_response, body.reason)
    return success(transaction, "Transaction marked as failed successfully")


@app.patch("/api/transactions/{transaction_id}/void")
def void_transaction(transaction_id: str, admin=Depends(require_admin)):
    return success(payments.void_transaction(transaction_id, admin), "Transaction voided successfully")


@app.patch("/api/transactions/{transaction_id}/refund")
def refund_transaction(transaction_id: str, body: RefundBody, admin=Depends(require_admin)):
    return success(payments.refund_transaction(transaction_id, body, admin), "Refund processed successfully")


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: str, admin=Depends(require_admin)):
    payments.delete_transaction(transaction_id)
    return success(message="Transaction deleted successfully")


# ----------------------- Promo codes -----------------------
@app.post("/api/promo-codes/validate")
def validate_promo_code(body: PromoValidateBody, user=Depends(get_current_user)):
    result = promotions.validate_code(body.code, str(user["_id"]), body.order_value, body.product_ids)
    message = "Promo code is valid" if result["is_valid"] else "Promo code validation completed"
    return success(result, message)


@app.post("/api/promo-codes/apply")
def apply_promo_code(body: PromoApplyBody, request: Request, user=Depends(get_current_user)):
    if not is_admin(user):
        order = orders.find_by_number(body.order_id)
        if order and order["customer"] != user["_id"]:
            raise AuthorizationError("You do not have permission to apply a promo code to this order")
    result = promotions.apply_code(
        body.code,
        str(user["_id"]),
        body.order_id,
        body.order_value,
        body.product_ids,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return success(result, "Promo code applied successfully")


@app.post("/api/promo-codes/generate-code")
def generate_promo_code(body: GenerateCodeBody, admin=Depends(require_admin)):
    code = promotions.generate_unique_code(body.prefix, body.length)
    return success({"code": code}, "Promo code generated successfully")


@app.get("/api/promo-codes")
def list_promo_codes(page: int = 1, limit: int = 10, search: Optional[str] = None, status: str = "all",
                     sort_by: str = "created_at", sort_order: str = "desc", admin=Depends(require_admin)):
    page, limit, skip = page_params(page, limit)
    items, total = promotions.list_promo_codes(skip, limit, search, status, sort_by, sort_order)
    return success(items, "Promo codes retrieved successfully", pagination(page, limit, total))


@app.post("/api/promo-codes", status_code=201)
def create_promo_code(body: PromoCodeCreateBody, admin=Depends(require_admin)):
    return success(promotions.create_promo_code(body, admin), "Promo code created successfully")


@app.get("/api/promo-codes/{promo_id}")
def get_promo_code(promo_id: str, admin=Depends(require_admin)):
    return success(promotions.get_promo_code(promo_id), "Promo code retrieved successfully")


@app.put("/api/promo-codes/{promo_id}")
def update_promo_code(promo_id: str, body: PromoCodeUpdateBody, admin=Depends(require_admin)):
    return success(promotions.update_promo_code(promo_id, body, admin), "Promo code updated successfully")


@app.delete("/api/promo-codes/{promo_id}")
def delete_promo_code(promo_id: str, admin=Depends(require_admin)):
    promotions.delete_promo_code(promo_id)
    return success(message="Promo code deleted successfully")


@app.patch("/api/promo-codes/{promo_id}/toggle-status")
def toggle_promo_code(promo_id: str, admin=Depends(require_admin)):
    promo = promotions.toggle_status(promo_id, admin)
    return success(promo, f"Promo code {'activated' if promo['is_active'] else 'deactivated'} successfully")


@app.get("/api/promo-codes/{promo_id}/statistics")
def promo_code_statistics(promo_id: str, start_date: Optional[datetime] = None,
                          end_date: Optional[datetime] = None, admin=Depends(require_admin)):
    stats = promotions.usage_statistics(promo_id, start_date, end_date)
    return success(stats, "Usage statistics retrieved successfully")


@app.post("/api/promo-codes/{promo_id}/duplicate", status_code=201)
def duplicate_promo_code(promo_id: str, body: PromoDuplicateBody, admin=Depends(require_admin)):
    promo = promotions.duplicate_promo_code(promo_id, body.new_code, admin, body.start_date, body.end_date)
    return success(promo, "Promo code duplicated successfully")


# ----------------------- Uploads -----------------------
@app.post("/api/upload/image", status_code=201)
def upload_image(image: UploadFile = File(...), folder: str = "uploads", admin=Depends(require_admin)):
    return success(storage.upload_file(image, folder), "File uploaded successfully")


@app.post("/api/upload/images", status_code=201)
def upload_images(images: List[UploadFile] = File(...), folder: str = "uploads", admin=Depends(require_admin)):
    if len(images) > storage.MAX_FILES:
        raise ValidationError(f"Too many files. Maximum is {storage.MAX_FILES} files.")
    uploaded = [storage.upload_file(image, folder, field="images") for image in images]
    return success(uploaded, f"{len(uploaded)} files uploaded successfully", {"count": len(uploaded)})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=config.PORT, reload=config.ENVIRONMENT == "development")
