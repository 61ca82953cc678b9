import math
import os
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

import bcrypt
from bson import Binary
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from .discounts import (
    DiscountResult,
    PromoCode,
    PromoCodeConfigError,
    DiscountEngine,
    format_amount,
    normalize_code,
    to_decimal,
)
from .errors import ApiError
from .gateway import RazorpayClient
from .payments import OrderStatus, PaymentReconciler, PENDING_STATE
from .repositories import MongoOrderRepository, MongoPromoCodeRepository, parse_object_id
from .settings import Settings

DEFAULT_HERO = {
    "title": "The Art of Accessory.",
    "subtitle": "HOLD Luxury in your HAND. Curated collections.",
    "brandTag": "PRISM HOLD",
    "textAlign": "center",
    "fontSize": 48,
    "titleFontSize": 48,
    "subtitleFontSize": 20,
    "fontWeight": "normal",
    "textDecoration": "none",
    "color": "#0f172a",
    "images": ["image.png"],
    "showContainer": True,
    "showButton": True,
    "showBrandTag": True,
    "showTitle": True,
    "showSubtitle": True,
}
HERO_TEXT_FIELDS = {
    "title": "title",
    "subtitle": "subtitle",
    "brandTag": "brand_tag",
    "color": "color",
}
HERO_CHOICE_FIELDS = {
    "textAlign": ("text_align", ("left", "center", "right")),
    "fontWeight": ("font_weight", ("normal", "semibold", "bold", "bolder")),
    "textDecoration": ("text_decoration", ("none", "underline", "line-through")),
}
HERO_NUMBER_FIELDS = {
    "fontSize": "font_size",
    "titleFontSize": "title_font_size",
    "subtitleFontSize": "subtitle_font_size",
}
HERO_FLAG_FIELDS = {
    "showContainer": "show_container",
    "showButton": "show_button",
    "showBrandTag": "show_brand_tag",
    "showTitle": "show_title",
    "showSubtitle": "show_subtitle",
}

HELP_REQUEST_STATUSES = ("Pending", "In Progress", "Resolved")
RECOMMENDATION_LIMIT = 8
OBJECT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")


def verify_google_identity(token: str, client_id: str) -> Tuple[str, str]:
    """Verify a Google ID token and return the account's ``(email, name)``."""
    claims = google_id_token.verify_oauth2_token(
        token, google_requests.Request(), audience=client_id
    )
    return str(claims.get("email") or "").strip().lower(), str(claims.get("name") or "")


def isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    return value.isoformat() if value.tzinfo is not None else f"{value.isoformat()}Z"


def ensure_indexes(db, logger):
    try:
        db.users.create_index("email", unique=True)
        db.orders.create_index([("user_id", 1), ("created_at", -1)])
        db.orders.create_index("gateway_order_id")
        db.orders.create_index("gateway_order_ids")
        db.promo_codes.create_index("code", unique=True)
        db.products.create_index("product_id", unique=True)
        db.categories.create_index("name", unique=True)
    except PyMongoError as exc:
        logger.warning("Unable to ensure indexes: %s", exc)


def create_app(settings: Optional[Settings] = None, database=None, gateway=None) -> Flask:
    """Create and configure the Flask application."""
    settings = settings or Settings.from_env()
    app = Flask(__name__)

    if settings.trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=settings.trusted_proxy_hops,
            x_proto=settings.trusted_proxy_hops,
            x_host=settings.trusted_proxy_hops,
            x_port=settings.trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = settings.jwt_secret_key
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = settings.jwt_access_token_expires
    app.config["MONGO_URI"] = settings.mongo_uri
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_mb * 1024 * 1024

    # --- Initialize extensions ---
    CORS(app, origins=settings.cors_origins or "*")
    jwt = JWTManager(app)

    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
        ensure_indexes(database, app.logger)
    db = database

    if not settings.gateway.configured:
        app.logger.warning(
            "Razorpay credentials not configured. Payment features will not work. "
            "Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET in the environment."
        )

    order_repository = MongoOrderRepository(db.orders)
    promo_code_repository = MongoPromoCodeRepository(db.promo_codes)
    discount_engine = DiscountEngine(settings.discounts)
    reconciler = PaymentReconciler(
        settings.gateway,
        order_repository,
        gateway or RazorpayClient(settings.gateway),
    )

    @jwt.unauthorized_loader
    def missing_token(reason: str):
        return jsonify({"error": "No token provided"}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason: str):
        return jsonify({"error": "Invalid token"}), 403

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({"error": "Invalid token"}), 403

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def safe_float(value, default=0.0):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if math.isfinite(numeric):
            return numeric
        return default

    def safe_positive_int(value, default=0):
        try:
            numeric = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return default
        return max(default, numeric)

    def optional_int(value) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(float(value))
        except (TypeError, ValueError, OverflowError):
            return None

    def issue_token(user_document, is_admin: bool = False) -> str:
        claims = {"email": user_document.get("email", "")}
        if is_admin:
            claims["is_admin"] = True
        return create_access_token(
            identity=str(user_document["_id"]), additional_claims=claims
        )

    def serialize_session_user(user_document, include_admin: bool = False) -> Dict:
        serialized = {
            "uid": str(user_document["_id"]),
            "email": user_document.get("email", ""),
            "displayName": user_document.get("display_name") or "",
        }
        if include_admin:
            serialized["isAdmin"] = bool(user_document.get("is_admin"))
        return serialized

    def serialize_admin_user(user_document) -> Dict:
        return {
            "id": str(user_document["_id"]),
            "email": user_document.get("email", ""),
            "displayName": user_document.get("display_name") or "",
            "isAdmin": bool(user_document.get("is_admin")),
            "createdAt": isoformat(user_document.get("created_at")),
        }

    def require_current_user():
        user_document = db.users.find_one({"_id": parse_object_id(get_jwt_identity())})
        if not user_document:
            return None, (jsonify({"error": "User not found"}), 401)
        return user_document, None

    def require_admin_user():
        current_user, user_error = require_current_user()
        if user_error:
            return None, user_error
        if not get_jwt().get("is_admin") or not current_user.get("is_admin"):
            return None, (jsonify({"error": "Admin access required"}), 403)
        return current_user, None

    def create_user_records(email: str, password_hash: Optional[bytes], display_name: str):
        user_document = {
            "email": email,
            "password": password_hash,
            "display_name": display_name,
            "is_admin": False,
            "created_at": datetime.utcnow(),
        }
        insert_result = db.users.insert_one(user_document)
        user_document["_id"] = insert_result.inserted_id
        user_id = str(insert_result.inserted_id)
        db.profiles.insert_one(
            {"user_id": user_id, "email": email, "display_name": display_name}
        )
        db.carts.insert_one({"user_id": user_id, "items": []})
        return user_document

    def convert_image_to_url(value) -> Optional[str]:
        if not value:
            return None
        candidate = str(value)
        if candidate.startswith("/uploads/") or candidate.startswith("http"):
            return candidate
        if OBJECT_ID_PATTERN.match(candidate):
            return f"/api/images/{candidate}"
        return candidate

    def convert_image_list(values) -> List[str]:
        if not isinstance(values, list):
            return []
        return [url for url in (convert_image_to_url(value) for value in values) if url]

    ADDRESS_FIELDS = ("name", "street", "city", "zip", "phone")

    def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(payload, dict):
            return {}
        normalized: Dict[str, str] = {}
        for field in ADDRESS_FIELDS:
            value = payload.get(field)
            if value is None:
                continue
            trimmed = str(value).strip()
            if trimmed:
                normalized[field] = trimmed
        return normalized

    def serialize_address(address_document) -> Dict:
        return {
            "id": str(address_document["_id"]),
            **{field: address_document.get(field, "") for field in ADDRESS_FIELDS},
        }

    def normalize_order_item(payload):
        if not isinstance(payload, dict):
            return None

        product_identifier = (
            payload.get("productId")
            if payload.get("productId") is not None
            else payload.get("product_id", payload.get("id"))
        )
        product_id = str(product_identifier).strip() if product_identifier is not None else ""
        if not product_id:
            return None

        unit_price = safe_float(
            payload.get("unitPrice", payload.get("unit_price", payload.get("price"))), 0.0
        )
        if unit_price < 0:
            return None

        return {
            "product_id": product_id,
            "quantity": safe_positive_int(payload.get("quantity"), 1),
            "category": str(payload.get("category") or "").strip(),
            "unit_price": round(unit_price, 2),
            "name": str(payload.get("name") or "").strip(),
            "image": str(payload.get("image") or "").strip(),
        }

    def calculate_subtotal(items: List[Dict]) -> float:
        return round(
            sum(item["unit_price"] * item["quantity"] for item in items), 2
        )

    def serialize_order(order_document, include_customer: bool = False) -> Dict:
        items = []
        for entry in order_document.get("items") or []:
            if not isinstance(entry, dict):
                continue
            unit_price = round(safe_float(entry.get("unit_price"), 0.0), 2)
            quantity = safe_positive_int(entry.get("quantity"), 1)
            items.append(
                {
                    "productId": entry.get("product_id", ""),
                    "quantity": quantity,
                    "category": entry.get("category", ""),
                    "unitPrice": unit_price,
                    "lineTotal": round(unit_price * quantity, 2),
                    "name": entry.get("name", ""),
                    "image": convert_image_to_url(entry.get("image")),
                }
            )

        serialized = {
            "id": str(order_document["_id"]),
            "items": items,
            "subtotal": order_document.get("subtotal", 0),
            "discount": order_document.get("discount", 0),
            "total": order_document.get("total", 0),
            "promoCode": order_document.get("promo_code"),
            "payment": order_document.get("payment", ""),
            "address": order_document.get("address") or {},
            "status": order_document.get("status", OrderStatus.PENDING.value),
            "paymentStatus": order_document.get("payment_status", "Pending"),
            "gatewayOrderId": order_document.get("gateway_order_id"),
            "gatewayPaymentId": order_document.get("gateway_payment_id"),
            "createdAt": isoformat(order_document.get("created_at")),
        }
        if include_customer:
            customer = db.users.find_one(
                {"_id": parse_object_id(order_document.get("user_id"))}
            )
            serialized["customer"] = (
                {
                    "email": customer.get("email", ""),
                    "displayName": customer.get("display_name") or "",
                }
                if customer
                else None
            )
        return serialized

    PRODUCT_TEXT_FIELDS = {
        "name": "name",
        "category": "category",
        "material": "material",
        "description": "description",
        "image": "image",
    }

    def serialize_product(product_document) -> Dict:
        return {
            "_id": str(product_document["_id"]),
            "id": product_document.get("product_id"),
            "name": product_document.get("name", ""),
            "price": product_document.get("price", 0),
            "discount": product_document.get("discount", 0),
            "image": convert_image_to_url(product_document.get("image")),
            "images": convert_image_list(product_document.get("images")),
            "category": product_document.get("category", ""),
            "material": product_document.get("material", ""),
            "description": product_document.get("description", ""),
            "details": product_document.get("details") or [],
            "views": product_document.get("views", 0),
            "orders": product_document.get("orders", 0),
            "favorites": product_document.get("favorites", 0),
            "createdAt": isoformat(product_document.get("created_at")),
        }

    def build_product_fields(payload: Dict, partial: bool) -> Tuple[Dict, Optional[str]]:
        fields: Dict[str, object] = {}
        for key, field in PRODUCT_TEXT_FIELDS.items():
            if key in payload:
                fields[field] = str(payload.get(key) or "").strip()

        if not partial and not fields.get("name"):
            return {}, "Product name is required."
        if partial and "name" in fields and not fields["name"]:
            return {}, "Product name is required."

        if "price" in payload or not partial:
            price_value = safe_float(payload.get("price"), -1.0)
            if price_value < 0:
                return {}, "Price must be a non-negative number."
            fields["price"] = round(price_value, 2)

        if "discount" in payload:
            discount_value = safe_float(payload.get("discount"), -1.0)
            if not 0 <= discount_value <= 100:
                return {}, "Discount must be a percentage between 0 and 100."
            fields["discount"] = discount_value

        if "id" in payload:
            product_number = optional_int(payload.get("id"))
            if product_number is None:
                return {}, "Product id must be a whole number."
            fields["product_id"] = product_number

        for key in ("images", "details"):
            if key in payload:
                values = payload.get(key)
                if not isinstance(values, list):
                    return {}, f"{key} must be a list."
                fields[key] = [str(value).strip() for value in values if str(value).strip()]

        return fields, None

    def next_product_number() -> int:
        latest = db.products.find_one(
            {"product_id": {"$type": "number"}}, sort=[("product_id", -1)]
        )
        return int(latest["product_id"]) + 1 if latest else 1

    def serialize_category(category_document) -> Dict:
        return {
            "_id": str(category_document["_id"]),
            "name": category_document.get("name", ""),
            "description": category_document.get("description", ""),
            "coverImage": convert_image_to_url(category_document.get("cover_image")),
            "createdAt": isoformat(category_document.get("created_at")),
        }

    def serialize_help_request(help_document, include_user: bool = False) -> Dict:
        serialized = {
            "id": str(help_document["_id"]),
            "email": help_document.get("email", ""),
            "name": help_document.get("name", ""),
            "subject": help_document.get("subject", ""),
            "message": help_document.get("message", ""),
            "status": help_document.get("status", "Pending"),
            "replies": [
                {
                    "message": reply.get("message", ""),
                    "fromAdmin": bool(reply.get("from_admin")),
                    "createdAt": isoformat(reply.get("created_at")),
                }
                for reply in help_document.get("replies") or []
                if isinstance(reply, dict)
            ],
            "createdAt": isoformat(help_document.get("created_at")),
        }
        if include_user:
            serialized["userId"] = help_document.get("user_id")
        return serialized

    def append_help_reply(help_document, message: str, from_admin: bool, status=None):
        updates: Dict[str, object] = {
            "$push": {
                "replies": {
                    "message": message,
                    "from_admin": from_admin,
                    "created_at": datetime.utcnow(),
                }
            }
        }
        if status:
            updates["$set"] = {"status": status}
        db.help_requests.update_one({"_id": help_document["_id"]}, updates)
        return db.help_requests.find_one({"_id": help_document["_id"]})

    PROMO_FIELD_MAP = {
        "code": "code",
        "description": "description",
        "discountType": "discount_type",
        "discountValue": "discount_value",
        "applicableTo": "applicable_to",
        "productIds": "product_ids",
        "minPurchase": "min_purchase",
        "maxDiscount": "max_discount",
        "validFrom": "valid_from",
        "validUntil": "valid_until",
        "usageLimit": "usage_limit",
        "usedCount": "used_count",
        "isActive": "is_active",
    }

    def build_promo_code_document(payload: Dict, existing: Optional[Dict] = None) -> Dict:
        document: Dict[str, object] = dict(existing or {})
        for key, field in PROMO_FIELD_MAP.items():
            if key in payload:
                document[field] = payload.get(key)

        # Validates the whole document; raises PromoCodeConfigError.
        promo_code = PromoCode.from_document(document)
        return {
            "code": promo_code.code,
            "description": promo_code.description,
            "discount_type": promo_code.discount_type.value,
            "discount_value": float(promo_code.discount_value),
            "applicable_to": promo_code.applicable_to.value,
            "product_ids": list(document.get("product_ids") or []),
            "min_purchase": float(promo_code.min_purchase or 0),
            "max_discount": float(promo_code.max_discount) if promo_code.max_discount else None,
            "valid_from": promo_code.valid_from or datetime.utcnow(),
            "valid_until": promo_code.valid_until,
            "usage_limit": promo_code.usage_limit,
            "used_count": promo_code.used_count,
            "is_active": promo_code.is_active,
        }

    def serialize_promo_code(promo_document) -> Dict:
        return {
            "id": str(promo_document["_id"]),
            "code": promo_document.get("code", ""),
            "description": promo_document.get("description", ""),
            "discountType": promo_document.get("discount_type"),
            "discountValue": promo_document.get("discount_value"),
            "applicableTo": promo_document.get("applicable_to", "all"),
            "productIds": promo_document.get("product_ids") or [],
            "minPurchase": promo_document.get("min_purchase", 0),
            "maxDiscount": promo_document.get("max_discount"),
            "validFrom": isoformat(promo_document.get("valid_from")),
            "validUntil": isoformat(promo_document.get("valid_until")),
            "usageLimit": promo_document.get("usage_limit"),
            "usedCount": promo_document.get("used_count", 0),
            "isActive": bool(promo_document.get("is_active", True)),
            "createdAt": isoformat(promo_document.get("created_at")),
        }

    def evaluate_promo_code(code: str, items, subtotal) -> DiscountResult:
        promo_document = promo_code_repository.find_by_code(code)
        promo_code = None
        if promo_document:
            try:
                promo_code = PromoCode.from_document(promo_document)
            except PromoCodeConfigError as exc:
                app.logger.error("Promo code %s is misconfigured: %s", code, exc)
        return discount_engine.evaluate(promo_code, items, subtotal, datetime.utcnow())

    def serialize_hero(hero_document) -> Dict:
        serialized = dict(DEFAULT_HERO)
        for key, field in {
            **HERO_TEXT_FIELDS,
            **{key: choice[0] for key, choice in HERO_CHOICE_FIELDS.items()},
            **HERO_NUMBER_FIELDS,
            **HERO_FLAG_FIELDS,
        }.items():
            if field in hero_document:
                serialized[key] = hero_document[field]
        if "images" in hero_document:
            serialized["images"] = convert_image_list(hero_document.get("images"))
        serialized["updatedAt"] = isoformat(hero_document.get("updated_at"))
        return serialized

    def api_error_response(exc: ApiError):
        return jsonify(exc.to_payload()), exc.status_code

    # --- ROUTES ---

    @app.route("/api/health", methods=["GET"])
    def health():
        try:
            db.command("ping")
            database_status = "connected"
        except PyMongoError:
            database_status = "disconnected"
        return jsonify(
            {
                "status": "ok",
                "message": "Server is running",
                "mongodb": {"status": database_status},
                "environment": {
                    "environment": settings.environment,
                    "hasJwtSecret": bool(settings.jwt_secret_key),
                    "paymentsConfigured": settings.gateway.configured,
                    "googleSignInConfigured": bool(settings.google_client_id),
                },
            }
        )

    # Auth
    @app.route("/api/auth/signup", methods=["POST"])
    def signup():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        display_name = str(payload.get("displayName") or "").strip()

        if not email or not password:
            return jsonify({"error": "Email and password are required"}), 400

        if db.users.find_one({"email": email}):
            return jsonify({"error": "User already exists"}), 400

        hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        user_document = create_user_records(email, hashed_pw, display_name)
        app.logger.info("Registered new account %s", email)

        return jsonify(
            {"user": serialize_session_user(user_document), "token": issue_token(user_document)}
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not email or not password:
            return jsonify({"error": "Email and password are required"}), 400

        user = db.users.find_one({"email": email})
        if (
            not user
            or not user.get("password")
            or not bcrypt.checkpw(password.encode("utf-8"), user["password"])
        ):
            return jsonify({"error": "Invalid credentials"}), 401

        return jsonify({"user": serialize_session_user(user), "token": issue_token(user)})

    @app.route("/api/auth/google", methods=["POST"])
    def google_login():
        payload = request.get_json(silent=True) or {}
        token = str(payload.get("idToken") or "").strip()
        if not token:
            return jsonify({"error": "ID token is required"}), 400

        if not settings.google_client_id:
            return jsonify({"error": "Google sign-in is not configured."}), 500

        try:
            email, name = verify_google_identity(token, settings.google_client_id)
        except ValueError as exc:
            app.logger.warning("Rejected Google ID token: %s", exc)
            return jsonify({"error": "Google authentication failed"}), 401
        except GoogleAuthError as exc:
            app.logger.error("Google sign-in verification unavailable: %s", exc)
            return jsonify({"error": "Could not verify Google sign-in. Please try again."}), 502

        if not email:
            return jsonify({"error": "Google account has no email address"}), 400

        user = db.users.find_one({"email": email})
        if not user:
            user = create_user_records(email, None, name)
            app.logger.info("Registered new Google account %s", email)

        return jsonify({"user": serialize_session_user(user), "token": issue_token(user)})

    @app.route("/api/admin/login", methods=["POST"])
    def admin_login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not email or not password:
            return jsonify({"error": "Email and password are required"}), 400

        user = db.users.find_one({"email": email})
        if not user or not user.get("password"):
            return jsonify({"error": "Invalid credentials"}), 401

        if not user.get("is_admin"):
            return jsonify({"error": "Admin access required"}), 403

        if not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            return jsonify({"error": "Invalid credentials"}), 401

        return jsonify(
            {
                "user": serialize_session_user(user, include_admin=True),
                "token": issue_token(user, is_admin=True),
            }
        )

    # Profile
    @app.route("/api/profile", methods=["GET", "PUT"])
    @jwt_required()
    def manage_profile():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error
        user_id = str(current_user["_id"])

        if request.method == "GET":
            profile = db.profiles.find_one({"user_id": user_id})
            if not profile:
                profile = {
                    "user_id": user_id,
                    "email": current_user.get("email", ""),
                    "display_name": current_user.get("display_name") or "",
                }
                db.profiles.insert_one(dict(profile))
            return jsonify(
                {
                    "userId": user_id,
                    "email": profile.get("email", ""),
                    "displayName": profile.get("display_name") or "",
                }
            )

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, str] = {}
        if "email" in payload:
            updates["email"] = normalize_email(payload.get("email"))
        if "displayName" in payload:
            updates["display_name"] = str(payload.get("displayName") or "").strip()
        if updates:
            db.profiles.update_one({"user_id": user_id}, {"$set": updates}, upsert=True)
        return jsonify({"success": True})

    # Cart
    @app.route("/api/cart", methods=["GET", "PUT"])
    @jwt_required()
    def manage_cart():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error
        user_id = str(current_user["_id"])

        if request.method == "GET":
            cart = db.carts.find_one({"user_id": user_id})
            if not cart:
                cart = {"user_id": user_id, "items": []}
                db.carts.insert_one(dict(cart))
            return jsonify({"userId": user_id, "items": cart.get("items") or []})

        payload = request.get_json(silent=True) or {}
        items = payload.get("items")
        if not isinstance(items, list):
            return jsonify({"error": "Cart items must be a list"}), 400
        db.carts.update_one({"user_id": user_id}, {"$set": {"items": items}}, upsert=True)
        return jsonify({"success": True})

    # Addresses
    @app.route("/api/addresses", methods=["GET"])
    @jwt_required()
    def list_addresses():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error
        addresses = db.addresses.find({"user_id": str(current_user["_id"])})
        return jsonify([serialize_address(address) for address in addresses])

    @app.route("/api/addresses", methods=["POST"])
    @jwt_required()
    def create_address():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error
        address = normalize_address_payload(request.get_json(silent=True))
        if not address:
            return jsonify({"error": "Address details are required"}), 400
        address["user_id"] = str(current_user["_id"])
        insert_result = db.addresses.insert_one(address)
        address["_id"] = insert_result.inserted_id
        return jsonify(serialize_address(address))

    @app.route("/api/addresses/<address_id>", methods=["PUT", "DELETE"])
    @jwt_required()
    def manage_address(address_id: str):
        current_user, user_error = require_current_user()
        if user_error:
            return user_error
        ownership = {
            "_id": parse_object_id(address_id),
            "user_id": str(current_user["_id"]),
        }
        address = db.addresses.find_one(ownership)
        if not address:
            return jsonify({"error": "Address not found"}), 404

        if request.method == "DELETE":
            db.addresses.delete_one({"_id": address["_id"]})
            return jsonify({"success": True})

        updates = normalize_address_payload(request.get_json(silent=True))
        if updates:
            db.addresses.update_one({"_id": address["_id"]}, {"$set": updates})
        return jsonify(serialize_address({**address, **updates}))

    # Orders
    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error
        cursor = db.orders.find({"user_id": str(current_user["_id"])}).sort("created_at", -1)
        return jsonify([serialize_order(order) for order in cursor])

    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error

        payload = request.get_json(silent=True) or {}
        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            return jsonify({"error": "Include at least one item to place an order"}), 400

        items = []
        for entry in raw_items:
            normalized_entry = normalize_order_item(entry)
            if not normalized_entry:
                return jsonify({"error": "Every item needs a product id and a valid price"}), 400
            items.append(normalized_entry)

        subtotal = calculate_subtotal(items)
        discount = 0
        promo_code = normalize_code(payload.get("promoCode"))
        if promo_code:
            result = evaluate_promo_code(promo_code, raw_items, subtotal)
            if not result.valid:
                return jsonify(result.to_payload()), 400
            discount = format_amount(result.discount_amount)

        order_document = {
            "user_id": str(current_user["_id"]),
            "items": items,
            "subtotal": subtotal,
            "discount": discount,
            "total": round(subtotal - discount, 2),
            "promo_code": promo_code or None,
            "payment": str(payload.get("payment") or "").strip(),
            "address": normalize_address_payload(payload.get("address")),
            "status": PENDING_STATE.status.value,
            "payment_status": PENDING_STATE.payment_status.value,
            "created_at": datetime.utcnow(),
        }
        insert_result = db.orders.insert_one(order_document)
        order_document["_id"] = insert_result.inserted_id

        for item in items:
            product_number = optional_int(item["product_id"])
            if product_number is not None:
                db.products.update_one(
                    {"product_id": product_number}, {"$inc": {"orders": item["quantity"]}}
                )

        app.logger.info(
            "Order %s placed by %s (total %s)",
            insert_result.inserted_id,
            current_user.get("email"),
            order_document["total"],
        )
        return jsonify(serialize_order(order_document)), 201

    @app.route("/api/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    def update_order(order_id: str):
        current_user, user_error = require_current_user()
        if user_error:
            return user_error

        order = db.orders.find_one(
            {"_id": parse_object_id(order_id), "user_id": str(current_user["_id"])}
        )
        if not order:
            return jsonify({"error": "Order not found"}), 404

        # Status and gateway fields belong to payment reconciliation.
        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}
        if "address" in payload:
            updates["address"] = normalize_address_payload(payload.get("address"))
        if "payment" in payload:
            updates["payment"] = str(payload.get("payment") or "").strip()
        if updates:
            db.orders.update_one({"_id": order["_id"]}, {"$set": updates})
        return jsonify(serialize_order({**order, **updates}))

    # Razorpay payments
    @app.route("/api/payments/razorpay/create-order", methods=["POST"])
    @jwt_required()
    def razorpay_create_order():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error

        payload = request.get_json(silent=True) or {}
        try:
            result = reconciler.create_gateway_order(
                str(payload.get("orderId") or "").strip(),
                str(current_user["_id"]),
                payload.get("amount"),
                customer_email=current_user.get("email", ""),
            )
        except ApiError as exc:
            return api_error_response(exc)
        except Exception:
            app.logger.exception("Razorpay order creation error")
            return jsonify({"error": "Failed to create payment order", "success": False}), 500
        return jsonify(result)

    @app.route("/api/payments/razorpay/verify", methods=["POST"])
    @jwt_required()
    def razorpay_verify():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error

        payload = request.get_json(silent=True) or {}
        try:
            result = reconciler.verify_payment(
                str(payload.get("orderId") or "").strip(),
                str(current_user["_id"]),
                str(
                    payload.get("gatewayOrderId") or payload.get("razorpayOrderId") or ""
                ).strip(),
                str(
                    payload.get("gatewayPaymentId") or payload.get("razorpayPaymentId") or ""
                ).strip(),
                str(payload.get("signature") or payload.get("razorpaySignature") or "").strip(),
            )
        except ApiError as exc:
            return api_error_response(exc)
        except Exception:
            app.logger.exception("Payment verification error")
            return jsonify({"error": "Payment verification failed", "success": False}), 500
        return jsonify(result)

    @app.route("/api/payments/razorpay/webhook", methods=["POST"])
    def razorpay_webhook():
        # The signature covers the exact bytes received.
        raw_body = request.get_data(cache=True)
        signature = request.headers.get("X-Razorpay-Signature")
        try:
            result = reconciler.handle_webhook(raw_body, signature)
        except ApiError as exc:
            return api_error_response(exc)
        except Exception:
            app.logger.exception("Razorpay webhook error")
            return jsonify({"error": "Webhook processing failed", "success": False}), 500
        return jsonify(result)

    @app.route("/api/payments/razorpay/status/<order_id>", methods=["GET"])
    @jwt_required()
    def razorpay_status(order_id: str):
        current_user, user_error = require_current_user()
        if user_error:
            return user_error
        try:
            result = reconciler.refresh_status(order_id, str(current_user["_id"]))
        except ApiError as exc:
            return api_error_response(exc)
        except Exception:
            app.logger.exception("Payment status check error")
            return jsonify({"error": "Failed to check payment status", "success": False}), 500
        return jsonify(result)

    # Promo codes
    @app.route("/api/promo-code/validate", methods=["POST"])
    def validate_promo_code():
        payload = request.get_json(silent=True) or {}
        code = normalize_code(payload.get("code"))
        if not code:
            return jsonify({"error": "Promo code is required"}), 400

        items = payload.get("items") or []
        if not isinstance(items, list):
            return jsonify({"error": "Items must be a list"}), 400

        try:
            subtotal = to_decimal(payload.get("subtotal"), "subtotal")
        except PromoCodeConfigError:
            subtotal = None
        if subtotal is None or subtotal < 0:
            return jsonify({"error": "Subtotal must be a non-negative number"}), 400

        result = evaluate_promo_code(code, items, subtotal)
        if not result.valid:
            return jsonify(result.to_payload()), 400
        return jsonify(result.to_payload())

    @app.route("/api/admin/promo-codes", methods=["GET"])
    @jwt_required()
    def admin_list_promo_codes():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        cursor = db.promo_codes.find().sort("created_at", -1)
        return jsonify([serialize_promo_code(document) for document in cursor])

    @app.route("/api/admin/promo-codes", methods=["POST"])
    @jwt_required()
    def admin_create_promo_code():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        try:
            promo_document = build_promo_code_document(payload)
        except PromoCodeConfigError as exc:
            return jsonify({"error": str(exc)}), 400
        promo_document["created_at"] = datetime.utcnow()

        try:
            insert_result = db.promo_codes.insert_one(promo_document)
        except DuplicateKeyError:
            return jsonify({"error": "A promo code with this code already exists"}), 400
        promo_document["_id"] = insert_result.inserted_id

        app.logger.info(
            "Promo code %s created by %s", promo_document["code"], admin_user.get("email")
        )
        return jsonify(serialize_promo_code(promo_document))

    @app.route("/api/admin/promo-codes/<promo_id>", methods=["PUT", "DELETE"])
    @jwt_required()
    def admin_manage_promo_code(promo_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        existing = db.promo_codes.find_one({"_id": parse_object_id(promo_id)})
        if not existing:
            return jsonify({"error": "Promo code not found"}), 404

        if request.method == "DELETE":
            db.promo_codes.delete_one({"_id": existing["_id"]})
            return jsonify({"success": True})

        payload = request.get_json(silent=True) or {}
        try:
            updates = build_promo_code_document(payload, existing)
        except PromoCodeConfigError as exc:
            return jsonify({"error": str(exc)}), 400

        try:
            db.promo_codes.update_one({"_id": existing["_id"]}, {"$set": updates})
        except DuplicateKeyError:
            return jsonify({"error": "A promo code with this code already exists"}), 400
        return jsonify(serialize_promo_code({**existing, **updates}))

    # Catalog
    @app.route("/api/products", methods=["GET"])
    def list_products():
        cursor = db.products.find().sort("product_id", 1)
        return jsonify([serialize_product(product) for product in cursor])

    @app.route("/api/products/recent", methods=["GET"])
    def list_recent_products():
        cursor = db.products.find().sort("created_at", -1).limit(12)
        return jsonify([serialize_product(product) for product in cursor])

    def ranked_products(field: str, limit: int = 10):
        cursor = db.products.find().sort(field, -1).limit(limit)
        return jsonify([serialize_product(product) for product in cursor])

    @app.route("/api/products/most-viewed", methods=["GET"])
    def list_most_viewed_products():
        return ranked_products("views")

    @app.route("/api/products/most-ordered", methods=["GET"])
    def list_most_ordered_products():
        return ranked_products("orders")

    @app.route("/api/products/most-loved", methods=["GET"])
    def list_most_loved_products():
        return ranked_products("favorites")

    @app.route("/api/products/<product_id>/view", methods=["POST"])
    def record_product_view(product_id: str):
        product_number = optional_int(product_id)
        if product_number is None:
            return jsonify({"error": "Invalid product identifier"}), 400
        db.products.update_one({"product_id": product_number}, {"$inc": {"views": 1}})
        return jsonify({"success": True})

    @app.route("/api/products/by-category/<category>", methods=["GET"])
    def list_products_by_category(category: str):
        cursor = db.products.find({"category": category}).sort(
            [("orders", -1), ("views", -1)]
        )
        return jsonify([serialize_product(product) for product in cursor])

    @app.route("/api/products/recommendations", methods=["GET"])
    @jwt_required()
    def list_recommendations():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error

        recent_orders = (
            db.orders.find({"user_id": str(current_user["_id"])})
            .sort("created_at", -1)
            .limit(10)
        )
        categories = set()
        for order in recent_orders:
            for item in order.get("items") or []:
                if isinstance(item, dict) and item.get("category"):
                    categories.add(item["category"])

        popularity = [("orders", -1), ("views", -1)]
        recommendations = list(
            db.products.find({"category": {"$in": sorted(categories)}})
            .sort(popularity)
            .limit(RECOMMENDATION_LIMIT)
        )
        if len(recommendations) < RECOMMENDATION_LIMIT:
            recommendations.extend(
                db.products.find(
                    {"_id": {"$nin": [product["_id"] for product in recommendations]}}
                )
                .sort(popularity)
                .limit(RECOMMENDATION_LIMIT - len(recommendations))
            )
        return jsonify([serialize_product(product) for product in recommendations])

    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        cursor = db.categories.find().sort("name", 1)
        return jsonify([serialize_category(category) for category in cursor])

    @app.route("/api/categories/most-ordered", methods=["GET"])
    def list_most_ordered_categories():
        category_stats = db.orders.aggregate(
            [
                {"$unwind": "$items"},
                {
                    "$group": {
                        "_id": "$items.category",
                        "count": {"$sum": "$items.quantity"},
                    }
                },
                {"$sort": {"count": -1}},
                {"$limit": 3},
            ]
        )
        category_names = [stat["_id"] for stat in category_stats if stat.get("_id")]
        categories = {
            category["name"]: category
            for category in db.categories.find({"name": {"$in": category_names}})
        }
        return jsonify(
            [serialize_category(categories[name]) for name in category_names if name in categories]
        )

    # Help requests
    @app.route("/api/help-requests", methods=["GET", "POST"])
    @jwt_required()
    def manage_help_requests():
        current_user, user_error = require_current_user()
        if user_error:
            return user_error
        user_id = str(current_user["_id"])

        if request.method == "GET":
            cursor = db.help_requests.find({"user_id": user_id}).sort("created_at", -1)
            return jsonify([serialize_help_request(document) for document in cursor])

        payload = request.get_json(silent=True) or {}
        subject = str(payload.get("subject") or "").strip()
        message = str(payload.get("message") or "").strip()
        if not subject or not message:
            return jsonify({"error": "Subject and message are required"}), 400

        help_document = {
            "user_id": user_id,
            "email": current_user.get("email", ""),
            "name": str(payload.get("name") or current_user.get("display_name") or "").strip(),
            "subject": subject,
            "message": message,
            "status": HELP_REQUEST_STATUSES[0],
            "replies": [],
            "created_at": datetime.utcnow(),
        }
        insert_result = db.help_requests.insert_one(help_document)
        help_document["_id"] = insert_result.inserted_id
        return jsonify(serialize_help_request(help_document))

    @app.route("/api/help-requests/<request_id>/reply", methods=["POST"])
    @jwt_required()
    def reply_to_help_request(request_id: str):
        current_user, user_error = require_current_user()
        if user_error:
            return user_error

        help_document = db.help_requests.find_one(
            {"_id": parse_object_id(request_id), "user_id": str(current_user["_id"])}
        )
        if not help_document:
            return jsonify({"error": "Help request not found"}), 404

        message = str((request.get_json(silent=True) or {}).get("message") or "").strip()
        if not message:
            return jsonify({"error": "Message is required"}), 400

        updated = append_help_reply(help_document, message, from_admin=False)
        return jsonify(serialize_help_request(updated))

    # Images
    @app.route("/api/admin/upload", methods=["POST"])
    @jwt_required()
    def admin_upload_image():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        image_file = request.files.get("image")
        if not image_file or not image_file.filename:
            return jsonify({"error": "No file uploaded"}), 400

        original_name = secure_filename(image_file.filename)
        extension = os.path.splitext(original_name)[1].lower()
        if extension.lstrip(".") not in settings.allowed_image_extensions:
            return (
                jsonify(
                    {"error": "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."}
                ),
                400,
            )

        data = image_file.read()
        insert_result = db.images.insert_one(
            {
                "filename": f"{uuid4().hex}{extension}",
                "original_name": original_name,
                "mime_type": image_file.mimetype or "application/octet-stream",
                "data": Binary(data),
                "size": len(data),
                "created_at": datetime.utcnow(),
            }
        )
        image_id = str(insert_result.inserted_id)
        return jsonify({"url": f"/api/images/{image_id}", "id": image_id})

    @app.route("/api/images/<image_id>", methods=["GET"])
    def serve_image(image_id: str):
        image = db.images.find_one({"_id": parse_object_id(image_id)})
        if not image:
            return jsonify({"error": "Image not found"}), 404
        return Response(bytes(image.get("data") or b""), mimetype=image.get("mime_type"))

    # Hero
    @app.route("/api/hero", methods=["GET"])
    def get_hero():
        hero_document = db.heroes.find_one(sort=[("updated_at", -1)])
        if not hero_document:
            return jsonify(DEFAULT_HERO)
        return jsonify(serialize_hero(hero_document))

    @app.route("/api/admin/hero", methods=["GET", "PUT"])
    @jwt_required()
    def admin_manage_hero():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        hero_document = db.heroes.find_one(sort=[("updated_at", -1)])
        if request.method == "GET":
            return jsonify(serialize_hero(hero_document) if hero_document else {})

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {"updated_at": datetime.utcnow()}
        for key, field in HERO_TEXT_FIELDS.items():
            if key in payload:
                updates[field] = str(payload.get(key) or "")
        for key, (field, choices) in HERO_CHOICE_FIELDS.items():
            if key in payload:
                if payload.get(key) not in choices:
                    return jsonify({"error": f"{key} must be one of: {', '.join(choices)}"}), 400
                updates[field] = payload.get(key)
        for key, field in HERO_NUMBER_FIELDS.items():
            if key in payload:
                size = optional_int(payload.get(key))
                if size is None or size <= 0:
                    return jsonify({"error": f"{key} must be a positive number"}), 400
                updates[field] = size
        for key, field in HERO_FLAG_FIELDS.items():
            if key in payload:
                updates[field] = bool(payload.get(key))
        if isinstance(payload.get("images"), list):
            updates["images"] = [str(image) for image in payload["images"] if image]

        hero_filter = {"_id": hero_document["_id"]} if hero_document else {}
        db.heroes.update_one(hero_filter, {"$set": updates}, upsert=True)
        hero_document = db.heroes.find_one(sort=[("updated_at", -1)]) or updates
        return jsonify(serialize_hero(hero_document))

    # Admin: products
    @app.route("/api/admin/products", methods=["GET"])
    @jwt_required()
    def admin_list_products():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        cursor = db.products.find().sort("product_id", 1)
        return jsonify([serialize_product(product) for product in cursor])

    @app.route("/api/admin/products", methods=["POST"])
    @jwt_required()
    def admin_create_product():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        fields, field_error = build_product_fields(request.get_json(silent=True) or {}, partial=False)
        if field_error:
            return jsonify({"error": field_error}), 400

        product_document = {
            "discount": 0,
            "images": [],
            "details": [],
            "views": 0,
            "orders": 0,
            "favorites": 0,
            **fields,
            "created_at": datetime.utcnow(),
        }
        product_document.setdefault("product_id", next_product_number())
        try:
            insert_result = db.products.insert_one(product_document)
        except DuplicateKeyError:
            return jsonify({"error": "A product with this id already exists"}), 400
        product_document["_id"] = insert_result.inserted_id
        return jsonify(serialize_product(product_document))

    @app.route("/api/admin/products/<product_id>", methods=["PUT", "DELETE"])
    @jwt_required()
    def admin_manage_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document = db.products.find_one({"_id": parse_object_id(product_id)})
        if not product_document:
            return jsonify({"error": "Product not found"}), 404

        if request.method == "DELETE":
            db.products.delete_one({"_id": product_document["_id"]})
            return jsonify({"success": True})

        fields, field_error = build_product_fields(request.get_json(silent=True) or {}, partial=True)
        if field_error:
            return jsonify({"error": field_error}), 400
        if fields:
            try:
                db.products.update_one({"_id": product_document["_id"]}, {"$set": fields})
            except DuplicateKeyError:
                return jsonify({"error": "A product with this id already exists"}), 400
        return jsonify(serialize_product({**product_document, **fields}))

    # Admin: categories
    @app.route("/api/admin/categories", methods=["GET"])
    @jwt_required()
    def admin_list_categories():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        cursor = db.categories.find().sort("name", 1)
        return jsonify([serialize_category(category) for category in cursor])

    @app.route("/api/admin/categories", methods=["POST"])
    @jwt_required()
    def admin_create_category():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        name = " ".join(str(payload.get("name") or "").split())
        if not name:
            return jsonify({"error": "Category name is required"}), 400

        category_document = {
            "name": name,
            "description": str(payload.get("description") or "").strip(),
            "cover_image": str(payload.get("coverImage") or "").strip(),
            "created_at": datetime.utcnow(),
        }
        try:
            insert_result = db.categories.insert_one(category_document)
        except DuplicateKeyError:
            return jsonify({"error": "Category already exists"}), 400
        category_document["_id"] = insert_result.inserted_id
        return jsonify(serialize_category(category_document))

    @app.route("/api/admin/categories/<category_id>", methods=["PUT", "DELETE"])
    @jwt_required()
    def admin_manage_category(category_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        category_document = db.categories.find_one({"_id": parse_object_id(category_id)})
        if not category_document:
            return jsonify({"error": "Category not found"}), 404

        if request.method == "DELETE":
            db.categories.delete_one({"_id": category_document["_id"]})
            return jsonify({"success": True})

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, str] = {}
        if "name" in payload:
            updates["name"] = " ".join(str(payload.get("name") or "").split())
            if not updates["name"]:
                return jsonify({"error": "Category name is required"}), 400
        if "description" in payload:
            updates["description"] = str(payload.get("description") or "").strip()
        if "coverImage" in payload:
            updates["cover_image"] = str(payload.get("coverImage") or "").strip()
        if updates:
            try:
                db.categories.update_one({"_id": category_document["_id"]}, {"$set": updates})
            except DuplicateKeyError:
                return jsonify({"error": "Category already exists"}), 400
        return jsonify(serialize_category({**category_document, **updates}))

    # Admin: orders
    @app.route("/api/admin/orders", methods=["GET"])
    @jwt_required()
    def admin_list_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        cursor = db.orders.find().sort("created_at", -1)
        return jsonify([serialize_order(order, include_customer=True) for order in cursor])

    @app.route("/api/admin/orders/<order_id>/status", methods=["PUT"])
    @jwt_required()
    def admin_update_order_status(order_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        desired_status = str((request.get_json(silent=True) or {}).get("status") or "").strip()
        allowed_statuses = [status.value for status in OrderStatus]
        if desired_status not in allowed_statuses:
            return (
                jsonify({"error": f"Status must be one of: {', '.join(allowed_statuses)}"}),
                400,
            )

        order = db.orders.find_one({"_id": parse_object_id(order_id)})
        if not order:
            return jsonify({"error": "Order not found"}), 404

        db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"status": desired_status, "updated_at": datetime.utcnow()}},
        )
        app.logger.info(
            "Order %s status set to %s by %s", order["_id"], desired_status, admin_user.get("email")
        )
        return jsonify(serialize_order({**order, "status": desired_status}, include_customer=True))

    # Admin: users
    @app.route("/api/admin/users", methods=["GET"])
    @jwt_required()
    def admin_list_users():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        cursor = db.users.find({}, {"password": 0}).sort("created_at", -1)
        return jsonify([serialize_admin_user(user) for user in cursor])

    @app.route("/api/admin/users/<user_id>", methods=["PUT", "DELETE"])
    @jwt_required()
    def admin_manage_user(user_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        user_document = db.users.find_one({"_id": parse_object_id(user_id)})
        if not user_document:
            return jsonify({"error": "User not found"}), 404

        if request.method == "DELETE":
            if user_document.get("is_admin"):
                return jsonify({"error": "Cannot delete admin user"}), 400
            db.users.delete_one({"_id": user_document["_id"]})
            return jsonify({"success": True})

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}
        if payload.get("isAdmin") is not None:
            updates["is_admin"] = bool(payload.get("isAdmin"))
        display_name = str(payload.get("displayName") or "").strip()
        if display_name:
            updates["display_name"] = display_name
        if updates:
            db.users.update_one({"_id": user_document["_id"]}, {"$set": updates})
        return jsonify(serialize_admin_user({**user_document, **updates}))

    # Admin: help requests
    @app.route("/api/admin/help-requests", methods=["GET"])
    @jwt_required()
    def admin_list_help_requests():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        cursor = db.help_requests.find().sort("created_at", -1)
        return jsonify([serialize_help_request(document, include_user=True) for document in cursor])

    @app.route("/api/admin/help-requests/<request_id>/reply", methods=["POST"])
    @jwt_required()
    def admin_reply_to_help_request(request_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        help_document = db.help_requests.find_one({"_id": parse_object_id(request_id)})
        if not help_document:
            return jsonify({"error": "Help request not found"}), 404

        message = str((request.get_json(silent=True) or {}).get("message") or "").strip()
        if not message:
            return jsonify({"error": "Message is required"}), 400

        updated = append_help_reply(
            help_document, message, from_admin=True, status=HELP_REQUEST_STATUSES[1]
        )
        return jsonify(serialize_help_request(updated, include_user=True))

    @app.route("/api/admin/help-requests/<request_id>", methods=["PUT", "DELETE"])
    @jwt_required()
    def admin_manage_help_request(request_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        help_document = db.help_requests.find_one({"_id": parse_object_id(request_id)})
        if not help_document:
            return jsonify({"error": "Help request not found"}), 404

        if request.method == "DELETE":
            db.help_requests.delete_one({"_id": help_document["_id"]})
            return jsonify({"success": True})

        desired_status = str((request.get_json(silent=True) or {}).get("status") or "").strip()
        if desired_status not in HELP_REQUEST_STATUSES:
            return (
                jsonify({"error": f"Status must be one of: {', '.join(HELP_REQUEST_STATUSES)}"}),
                400,
            )
        db.help_requests.update_one(
            {"_id": help_document["_id"]}, {"$set": {"status": desired_status}}
        )
        return jsonify(
            serialize_help_request({**help_document, "status": desired_status}, include_user=True)
        )

    # Admin: dashboard
    @app.route("/api/admin/stats", methods=["GET"])
    @jwt_required()
    def admin_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        revenue = list(
            db.orders.aggregate(
                [
                    {"$match": {"payment_status": "Success"}},
                    {"$group": {"_id": None, "total": {"$sum": "$total"}}},
                ]
            )
        )
        recent_orders = db.orders.find().sort("created_at", -1).limit(5)
        return jsonify(
            {
                "totalUsers": db.users.count_documents({}),
                "totalOrders": db.orders.count_documents({}),
                "totalProducts": db.products.count_documents({}),
                "pendingHelpRequests": db.help_requests.count_documents(
                    {"status": HELP_REQUEST_STATUSES[0]}
                ),
                "totalRevenue": revenue[0]["total"] if revenue else 0,
                "recentOrders": [
                    serialize_order(order, include_customer=True) for order in recent_orders
                ],
            }
        )

    return app
