import math
import os
import re
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt_identity, jwt_required
from flask_pymongo import PyMongo
from pymongo import DESCENDING
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from audit import AuditLog, serialize_audit_log
from carts import CartStore
from errors import AuthenticationError, ForbiddenError, MarketplaceError
from helpers import normalize_object_id_value, parse_bool, safe_positive_int
from inventory import InventoryStore
from ledger import TRANSACTION_STATUSES, TransactionLedger
from notifications import OrderMailer
from orders import DeliveryDetails, OrderSettings, OrderWorkflow
from serializers import serialize_cart, serialize_order, serialize_transaction
from wipay import WiPayClient

load_dotenv()

API_PREFIX = "/api/v1"
HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "PAYLOAD_TOO_LARGE",
}


def create_app(config: Optional[Dict] = None, db=None, gateway=None) -> Flask:
    """Create and configure the Flask application.

    ``db`` and ``gateway`` replace the MongoDB database and the WiPay client,
    which is how the test-suite runs against mongomock and a fake gateway.
    """
    app = Flask(__name__)

    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=1)
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/harvest_market"
    )
    app.config["FRONTEND_URL"] = os.getenv("FRONTEND_URL", "http://localhost:8081")
    app.config["WIPAY_MERCHANT_ID"] = os.getenv("WIPAY_MERCHANT_ID", "")
    app.config["WIPAY_MERCHANT_KEY"] = os.getenv("WIPAY_MERCHANT_KEY", "")
    app.config["WIPAY_SECRET_KEY"] = os.getenv("WIPAY_SECRET_KEY", "")
    app.config["WIPAY_ENVIRONMENT"] = os.getenv("WIPAY_ENVIRONMENT", "sandbox")
    app.config["WIPAY_TIMEOUT_SECONDS"] = os.getenv("WIPAY_TIMEOUT_SECONDS", "30")
    app.config["SHIPPING_FLAT_FEE"] = os.getenv("SHIPPING_FLAT_FEE", "500")
    app.config["REMOTE_PARISH_SURCHARGE"] = os.getenv("REMOTE_PARISH_SURCHARGE", "300")
    app.config["CLEAR_CART_ON_OFFLINE_ORDER"] = os.getenv(
        "CLEAR_CART_ON_OFFLINE_ORDER", "true"
    )
    app.config["STRICT_STOCK_RESERVATION"] = os.getenv("STRICT_STOCK_RESERVATION", "false")
    app.config["REQUIRE_PRODUCT_APPROVAL"] = os.getenv("REQUIRE_PRODUCT_APPROVAL", "false")
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["ORDER_EMAIL_SENDER"] = os.getenv(
        "ORDER_EMAIL_SENDER", "Harvest Market <orders@harvestmarket.jm>"
    )
    app.config["ENSURE_INDEXES"] = os.getenv("ENSURE_INDEXES", "true")
    if config:
        app.config.update(config)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:8081",
        "http://localhost:5173",
        str(app.config.get("FRONTEND_URL") or "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]
    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    if db is None:
        mongo = PyMongo(app)
        db = mongo.db

    if gateway is None:
        gateway = WiPayClient.from_config(app.config, logger=app.logger)
        if not gateway.configured:
            app.logger.warning("WiPay credentials are missing; card payments will fail")

    inventory = InventoryStore(
        db,
        logger=app.logger,
        strict=parse_bool(app.config.get("STRICT_STOCK_RESERVATION"), False),
    )
    carts = CartStore(db)
    ledger = TransactionLedger(db)
    audit_log = AuditLog(db, logger=app.logger)
    mailer = OrderMailer(
        app.config.get("RESEND_API_KEY", ""),
        app.config.get("ORDER_EMAIL_SENDER", ""),
        logger=app.logger,
    )
    workflow = OrderWorkflow(
        db,
        inventory,
        carts,
        ledger,
        gateway,
        settings=OrderSettings.from_config(app.config),
        audit=audit_log,
        mailer=mailer,
        logger=app.logger,
    )

    if parse_bool(app.config.get("ENSURE_INDEXES"), True):
        try:
            db.carts.create_index("user_id", unique=True)
            workflow.ensure_indexes()
            ledger.ensure_indexes()
            audit_log.ensure_indexes()
        except Exception as exc:
            app.logger.warning("Unable to ensure indexes: %s", exc)

    app.extensions["order_workflow"] = workflow

    # --- Error handling ---

    def error_response(code: str, message: str, status: int):
        return jsonify({"success": False, "error": {"code": code, "message": message}}), status

    @app.errorhandler(MarketplaceError)
    def handle_marketplace_error(error: MarketplaceError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        status = error.code or 500
        return error_response(
            HTTP_ERROR_CODES.get(status, "HTTP_ERROR"), error.description or error.name, status
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return error_response("INTERNAL_ERROR", "Something went wrong. Please try again.", 500)

    @jwt.unauthorized_loader
    def handle_missing_token(reason: str):
        return error_response("UNAUTHORIZED", reason, 401)

    @jwt.invalid_token_loader
    def handle_invalid_token(reason: str):
        return error_response("UNAUTHORIZED", reason, 401)

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return error_response("UNAUTHORIZED", "Token has expired.", 401)

    # --- Helpers ---

    def respond(data, message: Optional[str] = None, status: int = 200):
        body: Dict[str, object] = {"success": True, "data": data}
        if message:
            body["message"] = message
        return jsonify(body), status

    def get_current_user():
        user_object_id = normalize_object_id_value(get_jwt_identity())
        user_document = db.users.find_one({"_id": user_object_id}) if user_object_id else None
        if not user_document:
            raise AuthenticationError("User not found.")
        return user_document

    def require_role(*roles: str):
        current_user = get_current_user()
        user_role = str(current_user.get("role") or "buyer").strip().lower()
        if user_role == "admin" or user_role in roles:
            return current_user
        raise ForbiddenError()

    def serialize_order_listing(listing: Dict[str, object]):
        return {
            "orders": [serialize_order(order, include_history=False) for order in listing["orders"]],
            "pagination": listing["pagination"],
        }

    # --- Cart ---

    @app.route(f"{API_PREFIX}/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        current_user = get_current_user()
        return respond(serialize_cart(carts.get_or_create(current_user["_id"])))

    @app.route(f"{API_PREFIX}/cart/items", methods=["POST"])
    @jwt_required()
    def add_cart_item():
        current_user = get_current_user()
        payload = request.get_json(silent=True) or {}
        cart = carts.add_item(
            current_user["_id"],
            payload.get("productId") or payload.get("product_id"),
            payload.get("quantity", 1),
        )
        return respond(serialize_cart(cart), "Item added to cart")

    @app.route(f"{API_PREFIX}/cart/items/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_cart_item(product_id: str):
        current_user = get_current_user()
        payload = request.get_json(silent=True) or {}
        cart = carts.update_item(current_user["_id"], product_id, payload.get("quantity"))
        return respond(serialize_cart(cart), "Cart updated")

    @app.route(f"{API_PREFIX}/cart/items/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_cart_item(product_id: str):
        current_user = get_current_user()
        cart = carts.remove_item(current_user["_id"], product_id)
        return respond(serialize_cart(cart), "Item removed from cart")

    @app.route(f"{API_PREFIX}/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart():
        current_user = get_current_user()
        carts.clear(current_user["_id"])
        return respond(serialize_cart(carts.get_or_create(current_user["_id"])), "Cart cleared")

    # --- Orders ---

    @app.route(f"{API_PREFIX}/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        current_user = get_current_user()
        payload = request.get_json(silent=True) or {}
        details = DeliveryDetails.from_payload(payload)
        order, payment = workflow.create_order(
            current_user["_id"],
            details,
            payload.get("paymentMethod") or payload.get("payment_method"),
        )
        return respond(
            {"order": serialize_order(order), "payment": payment},
            "Order created successfully",
            201,
        )

    @app.route(f"{API_PREFIX}/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        current_user = get_current_user()
        listing = workflow.list_orders(
            "buyer_id",
            current_user["_id"],
            status=(request.args.get("status") or "").strip() or None,
            page=request.args.get("page", 1),
            limit=request.args.get("limit", 10),
        )
        return respond(serialize_order_listing(listing))

    @app.route(f"{API_PREFIX}/orders/seller", methods=["GET"])
    @jwt_required()
    def list_seller_orders():
        current_user = require_role("farmer")
        listing = workflow.list_orders(
            "seller_id",
            current_user["_id"],
            status=(request.args.get("status") or "").strip() or None,
            page=request.args.get("page", 1),
            limit=request.args.get("limit", 10),
        )
        return respond(serialize_order_listing(listing))

    @app.route(f"{API_PREFIX}/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        current_user = get_current_user()
        return respond(serialize_order(workflow.get_buyer_order(order_id, current_user["_id"])))

    @app.route(f"{API_PREFIX}/orders/<order_id>/tracking", methods=["GET"])
    @jwt_required()
    def get_order_tracking(order_id: str):
        current_user = get_current_user()
        order = workflow.get_participant_order(order_id, current_user["_id"])
        return respond(serialize_order(order))

    @app.route(f"{API_PREFIX}/orders/<order_id>/transactions", methods=["GET"])
    @jwt_required()
    def list_order_transactions(order_id: str):
        current_user = get_current_user()
        order = workflow.get_participant_order(order_id, current_user["_id"])
        return respond(
            [serialize_transaction(entry) for entry in ledger.list_for_order(order["_id"])]
        )

    @app.route(f"{API_PREFIX}/orders/<order_id>/verify-payment", methods=["POST"])
    @jwt_required()
    def verify_order_payment(order_id: str):
        current_user = get_current_user()
        payload = request.get_json(silent=True) or {}
        order = workflow.verify_payment(order_id, current_user["_id"], payload.get("reference"))
        return respond(serialize_order(order), "Payment verification completed")

    @app.route(f"{API_PREFIX}/orders/<order_id>/retry-payment", methods=["POST"])
    @jwt_required()
    def retry_order_payment(order_id: str):
        current_user = get_current_user()
        order, payment = workflow.retry_payment(order_id, current_user["_id"])
        return respond(
            {"order": serialize_order(order), "payment": payment}, "Payment restarted"
        )

    @app.route(f"{API_PREFIX}/orders/<order_id>/cancel", methods=["PUT"])
    @jwt_required()
    def cancel_order(order_id: str):
        current_user = get_current_user()
        order = workflow.cancel_order(order_id, current_user["_id"])
        return respond(serialize_order(order), "Order cancelled successfully")

    @app.route(f"{API_PREFIX}/orders/<order_id>/status", methods=["PUT"])
    @jwt_required()
    def update_order_status(order_id: str):
        current_user = require_role("farmer")
        payload = request.get_json(silent=True) or {}
        order = workflow.update_status(
            order_id, current_user["_id"], payload.get("status"), payload.get("notes")
        )
        return respond(serialize_order(order), f"Order status updated to {order.get('status')}")

    # --- Payments ---

    @app.route(f"{API_PREFIX}/payments/webhook", methods=["POST"])
    def payment_webhook():
        workflow.handle_webhook(
            request.get_data(cache=False), request.headers.get("X-WiPay-Signature")
        )
        return jsonify({"received": True}), 200

    # --- Admin ---

    @app.route(f"{API_PREFIX}/admin/transactions", methods=["GET"])
    @jwt_required()
    def admin_list_transactions():
        require_role("admin")
        query: Dict[str, object] = {}
        status = (request.args.get("status") or "").strip().lower()
        if status in TRANSACTION_STATUSES:
            query["status"] = status
        reference = (request.args.get("reference") or "").strip()
        if reference:
            query["payment_reference"] = reference

        page = max(safe_positive_int(request.args.get("page"), 1), 1)
        limit = min(max(safe_positive_int(request.args.get("limit"), 50), 1), 200)
        cursor = (
            db.transactions.find(query)
            .sort("created_at", DESCENDING)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = db.transactions.count_documents(query)
        return respond(
            {
                "transactions": [serialize_transaction(entry) for entry in cursor],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit) if total else 0,
                },
            }
        )

    @app.route(f"{API_PREFIX}/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        require_role("admin")
        search_term = (request.args.get("search") or "").strip()
        page = max(safe_positive_int(request.args.get("page"), 1), 1)
        limit = min(max(safe_positive_int(request.args.get("limit"), 50), 1), 200)

        query: Dict[str, object] = {}
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"user_name": regex}, {"action": regex}]

        cursor = (
            db.audit_logs.find(query)
            .sort("created_at", DESCENDING)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        total = db.audit_logs.count_documents(query)
        return respond(
            {
                "logs": [serialize_audit_log(document) for document in cursor],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit) if total else 0,
                },
            }
        )

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
