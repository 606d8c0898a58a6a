"""
Database Schemas for the E-commerce Admin Backend

Each Pydantic model in the first half corresponds to one MongoDB collection.
Collection name is the snake_case of the class name (PromoCodeUsage ->
"promo_code_usage"). The second half holds request bodies.
"""
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

PHONE_PATTERN = r"^\+?[1-9]\d{7,14}$"

Role = Literal["admin", "user"]
StockStatus = Literal["in_stock", "out_of_stock", "low_stock", "pre_order"]
ProductStatus = Literal["active", "inactive", "draft", "archived"]
AddressType = Literal["home", "work", "billing", "shipping", "other"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned"]
OrderPaymentMethod = Literal["credit_card", "bank_transfer", "paypal", "invoice", "cash_on_delivery"]
OrderPaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_paid"]
Priority = Literal["low", "medium", "high", "urgent"]
ShippingMethod = Literal["standard", "express", "overnight", "pickup"]
TransactionStatus = Literal["Pending", "Completed", "Failed", "Cancelled", "Refunded", "Partially Refunded"]
TransactionPaymentMethod = Literal["Credit Card", "Debit Card", "Bank Transfer", "PayPal", "Cash", "Check",
                                   "Wire Transfer"]
InvoiceStatus = Literal["Pending", "Paid", "Overdue", "Cancelled"]
DiscountType = Literal["percentage", "fixed"]


# ----------------------- Collections -----------------------
class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str = Field(..., description="Salted sha256 of the password")
    salt: str
    first_name: str = Field(..., max_length=50)
    last_name: str = Field(..., max_length=50)
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    role: Role = "user"
    is_active: bool = True
    last_login: Optional[datetime] = None


class Brand(BaseModel):
    name: str
    logo: Optional[str] = None
    is_active: bool = True


class Category(BaseModel):
    name: str
    description: str = ""
    parent: Optional[Any] = None
    image: str
    is_active: bool = True
    order: int = 0
    slug: str
    meta_title: str = ""
    meta_description: str = ""


class Dimensions(BaseModel):
    length: Optional[float] = Field(None, ge=0)
    width: Optional[float] = Field(None, ge=0)
    height: Optional[float] = Field(None, ge=0)


class ProductAttribute(BaseModel):
    id: str
    value: Any = None


class QuantityLevel(BaseModel):
    level: Optional[int] = None
    min_quantity: Optional[str] = None
    max_quantity: Optional[str] = None
    price: Optional[str] = None
    discount: Optional[str] = None


class Parcel(BaseModel):
    width: Optional[str] = None
    height: Optional[str] = None
    length: Optional[str] = None
    weight: Optional[str] = None


class Meta(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    keywords: Optional[str] = None


class AdditionalField(BaseModel):
    label: Optional[str] = None
    type: Optional[str] = None
    value: Optional[str] = None


class Address(BaseModel):
    user: Any
    address_type: AddressType = "home"
    is_default: bool = False
    label: Optional[str] = Field(None, max_length=50)
    contact_name: Optional[str] = Field(None, max_length=100)
    contact_phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    street: Optional[str] = Field(None, max_length=200)
    street2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20)
    country: Optional[str] = Field(None, max_length=100)
    coordinates: Optional[dict] = None
    instructions: Optional[str] = Field(None, max_length=500)
    is_active: bool = True


class OrderItem(BaseModel):
    product: Any
    product_name: str
    sku: Optional[str] = None
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)
    discount_amount: float = 0
    subtotal: float = 0
    tax_rate: float = Field(0, ge=0)
    tax_amount: float = 0
    total_price: float = 0


class ShippingAddress(BaseModel):
    first_name: str = Field(..., max_length=50)
    last_name: str = Field(..., max_length=50)
    company: Optional[str] = Field(None, max_length=100)
    address_line1: str = Field(..., max_length=200)
    address_line2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    country: str = Field(..., max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20)
    phone: Optional[str] = Field(None, max_length=20)


class PaymentInfo(BaseModel):
    payment_method: OrderPaymentMethod = "invoice"
    payment_status: OrderPaymentStatus = "pending"
    transaction_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    payment_due_date: Optional[datetime] = None
    payment_notes: Optional[str] = None


class CustomerInfo(BaseModel):
    id: str
    name: str = Field(..., max_length=150)
    email: EmailStr


class Invoice(BaseModel):
    invoice_number: str
    invoice_date: datetime
    due_date: datetime
    status: InvoiceStatus = "Pending"
    total_amount: float = Field(..., ge=0)


class Transaction(BaseModel):
    transaction_id: str
    order_id: str = Field(..., description="Order number the payment belongs to")
    customer: CustomerInfo
    amount: float = Field(..., ge=0)
    payment_method: TransactionPaymentMethod
    status: TransactionStatus = "Pending"
    transaction_date: datetime
    description: Optional[str] = Field(None, max_length=500)
    currency: str = "USD"
    fees: float = Field(0, ge=0)
    net_amount: float
    reference: Optional[str] = None
    notes: Optional[str] = None
    invoice: Invoice
    refund_amount: float = 0
    processed_by: Optional[Any] = None
    is_active: bool = True


class PromoCode(BaseModel):
    code: str = Field(..., pattern=r"^[A-Z0-9]{3,20}$")
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0.01)
    minimum_order_value: float = Field(0, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_count: int = 0
    usage_per_customer: Optional[int] = Field(None, ge=1)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    applicable_products: List[Any] = []
    all_products: bool = False
    created_by: Any
    updated_by: Optional[Any] = None


class PromoCodeUsage(BaseModel):
    promo_code: Any
    customer_id: str
    order_id: str
    order_value: float = Field(..., ge=0)
    discount_amount: float = Field(..., ge=0)
    discount_type: DiscountType
    discount_value: float
    product_ids: List[Any] = []
    used_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# ----------------------- Auth bodies -----------------------
class RegisterBody(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone_number: str = Field(..., pattern=PHONE_PATTERN)


class LoginBody(BaseModel):
    identifier: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    role: Optional[Role] = None


class OtpRequestBody(BaseModel):
    identifier: Optional[str] = None
    username: Optional[str] = Field(None, min_length=3, max_length=30)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)
    first_name: Optional[str] = Field(None, max_length=50)
    last_name: Optional[str] = Field(None, max_length=50)
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class OtpVerifyBody(BaseModel):
    otp: str = Field(..., pattern=r"^\d{6}$")
    identifier: Optional[str] = None
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None


class RefreshTokenBody(BaseModel):
    refresh_token: Optional[str] = None


class ForgotPasswordBody(BaseModel):
    email: EmailStr


class ResetPasswordBody(BaseModel):
    token: str
    password: str = Field(..., min_length=6)


class ProfileUpdateBody(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
    username: Optional[str] = Field(None, min_length=3, max_length=30)
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class ChangePasswordBody(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class ReasonBody(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CreateAdminBody(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., max_length=50)
    last_name: str = Field(..., max_length=50)
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class CustomerCreateBody(BaseModel):
    username: str = Field(..., min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_]+$")
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)


# ----------------------- Catalog bodies -----------------------
class StatusBody(BaseModel):
    is_active: bool


class BrandCreateBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    logo: Optional[str] = None
    is_active: bool = True


class BrandUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    logo: Optional[str] = None
    is_active: Optional[bool] = None


class CategoryCreateBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    parent: Optional[str] = None
    image: str = Field(..., min_length=1)
    is_active: bool = True
    slug: Optional[str] = None
    meta_title: str = ""
    meta_description: str = ""


class CategoryUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    parent: Optional[str] = None
    image: Optional[str] = None
    is_active: Optional[bool] = None
    order: Optional[int] = None
    slug: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None


class CategoryOrderItem(BaseModel):
    id: str
    order: int


class CategoryOrderBody(BaseModel):
    categories: List[CategoryOrderItem] = Field(..., min_length=1)


class ProductCreateBody(BaseModel):
    product_name: str = Field(..., min_length=1, max_length=200)
    seller: Optional[str] = Field(None, max_length=100)
    sku: str = Field(..., min_length=1, max_length=50)
    categories: List[str] = Field(..., min_length=1)
    brand_id: str
    price: float = Field(..., gt=0)
    compare_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    stock_status: StockStatus = "in_stock"
    low_stock_threshold: int = Field(10, ge=0)
    track_quantity: bool = True
    tax_rate: float = Field(0, ge=0, le=100)
    guarantee_period: Optional[str] = None
    is_returnable: bool = True
    is_cancelable: bool = True
    is_delivery_available: bool = True
    short_description: Optional[str] = Field(None, max_length=500)
    long_description: Optional[str] = Field(None, max_length=5000)
    main_image: Optional[str] = None
    other_images: List[str] = []
    image_360_url: Optional[str] = None
    specifications_file: Optional[str] = None
    status: ProductStatus = "active"
    is_published: bool = False
    is_featured: bool = False
    featured_order: int = Field(0, ge=0)
    featured_until: Optional[datetime] = None
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    attributes: List[ProductAttribute] = []
    quantity_levels: List[QuantityLevel] = []
    parcel: Optional[Parcel] = None
    additional_fields: List[AdditionalField] = []
    meta: Optional[Meta] = None


class ProductUpdateBody(BaseModel):
    product_name: Optional[str] = Field(None, min_length=1, max_length=200)
    seller: Optional[str] = Field(None, max_length=100)
    sku: Optional[str] = Field(None, min_length=1, max_length=50)
    categories: Optional[List[str]] = Field(None, min_length=1)
    brand_id: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    compare_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    stock_status: Optional[StockStatus] = None
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    track_quantity: Optional[bool] = None
    tax_rate: Optional[float] = Field(None, ge=0, le=100)
    guarantee_period: Optional[str] = None
    is_returnable: Optional[bool] = None
    is_cancelable: Optional[bool] = None
    is_delivery_available: Optional[bool] = None
    short_description: Optional[str] = Field(None, max_length=500)
    long_description: Optional[str] = Field(None, max_length=5000)
    main_image: Optional[str] = None
    other_images: Optional[List[str]] = None
    image_360_url: Optional[str] = None
    specifications_file: Optional[str] = None
    status: Optional[ProductStatus] = None
    is_published: Optional[bool] = None
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    attributes: Optional[List[ProductAttribute]] = None
    quantity_levels: Optional[List[QuantityLevel]] = None
    parcel: Optional[Parcel] = None
    additional_fields: Optional[List[AdditionalField]] = None
    meta: Optional[Meta] = None


class BulkProductUpdate(BaseModel):
    id: str
    data: ProductUpdateBody


class BulkProductUpdateBody(BaseModel):
    updates: List[BulkProductUpdate] = Field(..., min_length=1)


class ProductDuplicateBody(BaseModel):
    sku: Optional[str] = Field(None, min_length=1, max_length=50)
    product_name: Optional[str] = Field(None, min_length=1, max_length=200)


class StockBody(BaseModel):
    stock: int = Field(..., ge=0)


class FeatureBody(BaseModel):
    order: int = Field(0, ge=0)
    featured_until: Optional[datetime] = None


class FeatureOrderBody(BaseModel):
    order: int = Field(..., ge=0)


# ----------------------- Address bodies -----------------------
class AddressCreateBody(BaseModel):
    customer_id: Optional[str] = None
    address_type: AddressType = "home"
    is_default: bool = False
    label: Optional[str] = Field(None, max_length=50)
    contact_name: Optional[str] = Field(None, max_length=100)
    contact_phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    street: Optional[str] = Field(None, max_length=200)
    street2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20)
    country: Optional[str] = Field(None, max_length=100)
    coordinates: Optional[dict] = None
    instructions: Optional[str] = Field(None, max_length=500)


class AddressUpdateBody(BaseModel):
    address_type: Optional[AddressType] = None
    is_default: Optional[bool] = None
    label: Optional[str] = Field(None, max_length=50)
    contact_name: Optional[str] = Field(None, max_length=100)
    contact_phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    street: Optional[str] = Field(None, max_length=200)
    street2: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20)
    country: Optional[str] = Field(None, max_length=100)
    coordinates: Optional[dict] = None
    instructions: Optional[str] = Field(None, max_length=500)


# ----------------------- Order bodies -----------------------
class OrderItemBody(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)
    unit_price: Optional[float] = Field(None, ge=0)
    discount: float = Field(0, ge=0, le=100)
    tax_rate: Optional[float] = Field(None, ge=0)


class OrderCreateBody(BaseModel):
    items: List[OrderItemBody] = Field(..., min_length=1)
    customer_phone: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    billing_address: Optional[ShippingAddress] = None
    payment_info: Optional[PaymentInfo] = None
    shipping_cost: float = Field(0, ge=0)
    currency: str = Field("AUD", min_length=3, max_length=3)
    priority: Priority = "medium"
    shipping_method: ShippingMethod = "standard"
    estimated_delivery_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)
    tags: List[str] = []


class OrderUpdateBody(BaseModel):
    shipping_address: Optional[ShippingAddress] = None
    billing_address: Optional[ShippingAddress] = None
    notes: Optional[str] = Field(None, max_length=1000)
    internal_notes: Optional[str] = Field(None, max_length=1000)
    customer_phone: Optional[str] = None
    priority: Optional[Priority] = None
    shipping_method: Optional[ShippingMethod] = None
    shipping_cost: Optional[float] = Field(None, ge=0)
    payment_info: Optional[PaymentInfo] = None
    estimated_delivery_date: Optional[datetime] = None
    tracking_number: Optional[str] = None
    tags: Optional[List[str]] = None
    status: Optional[OrderStatus] = None


class OrderStatusBody(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None
    tracking_number: Optional[str] = None


class OrderCancelBody(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ----------------------- Transaction bodies -----------------------
class TransactionCreateBody(BaseModel):
    order_id: str
    amount: Optional[float] = Field(None, ge=0)
    payment_method: TransactionPaymentMethod = "Credit Card"
    description: Optional[str] = Field(None, max_length=500)
    currency: str = Field("USD", min_length=3, max_length=3)
    fees: float = Field(0, ge=0)
    reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)
    due_days: int = Field(30, ge=0)


class TransactionUpdateBody(BaseModel):
    payment_method: Optional[TransactionPaymentMethod] = None
    description: Optional[str] = Field(None, max_length=500)
    fees: Optional[float] = Field(None, ge=0)
    reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)
    invoice_status: Optional[InvoiceStatus] = None


class TransactionCompleteBody(BaseModel):
    gateway_transaction_id: Optional[str] = None
    gateway_response: Optional[dict] = None


class TransactionFailBody(BaseModel):
    gateway_response: Optional[dict] = None
    reason: Optional[str] = Field(None, max_length=500)


class RefundBody(BaseModel):
    amount: float = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=500)


# ----------------------- Promo code bodies -----------------------
class PromoCodeCreateBody(BaseModel):
    code: str = Field(..., min_length=3, max_length=20)
    description: Optional[str] = Field(None, max_length=500)
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0.01)
    minimum_order_value: float = Field(0, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_per_customer: Optional[int] = Field(None, ge=1)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    applicable_products: List[str] = []
    all_products: bool = False


class PromoCodeUpdateBody(BaseModel):
    code: Optional[str] = Field(None, min_length=3, max_length=20)
    description: Optional[str] = Field(None, max_length=500)
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, ge=0.01)
    minimum_order_value: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_per_customer: Optional[int] = Field(None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    applicable_products: Optional[List[str]] = None
    all_products: Optional[bool] = None


class PromoValidateBody(BaseModel):
    code: str = Field(..., min_length=1)
    order_value: float = Field(0, ge=0)
    product_ids: List[str] = []


class PromoApplyBody(PromoValidateBody):
    order_id: str


class PromoDuplicateBody(BaseModel):
    new_code: str = Field(..., min_length=3, max_length=20)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class GenerateCodeBody(BaseModel):
    prefix: str = Field("", max_length=19)
    length: int = Field(8, ge=4, le=20)
