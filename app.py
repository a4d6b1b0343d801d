import asyncio
import hmac
import logging
import os
import threading
from datetime import datetime, timezone

from flask import Flask, jsonify, request
from flask_socketio import SocketIO, emit

from config import configure_logging
from errors import OrderTransitionError, PersistenceError
from flags import LocalFlags
from main import create_stores
from models import OrderStatus, ShopSettings
from scheduler import RiderScheduler
from session import LiveSessionController, SessionCallbacks
from store import active_oldest_first
from tracking import CurrentOrderTracker

logger = logging.getLogger(__name__)


class LoopThread:
    """One background event loop shared by every socket request"""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.thread.start()

    def submit(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro, timeout=30):
        return self.submit(coro).result(timeout)


def create_app(order_store=None, settings_store=None, flags=None, scheduler=None, controller_factory=None):
    if order_store is None or settings_store is None:
        order_store, settings_store = create_stores()
    flags = flags or LocalFlags()
    # Rider availability lives as long as the process
    scheduler = scheduler or RiderScheduler()
    controller_factory = controller_factory or LiveSessionController

    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.getenv("FLASK_SECRET_KEY", "change-me")
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")
    loop = LoopThread()
    state = {"controller": None, "starting": None}
    start_lock = threading.Lock()

    tracker = CurrentOrderTracker(
        order_store,
        flags,
        on_update=lambda order: socketio.emit("order_update", order.to_record()),
        on_error=lambda message: socketio.emit("error", {"message": message}),
    )

    async def restore_current_order():
        return tracker.restore()

    loop.run(restore_current_order())

    def is_admin() -> bool:
        settings = loop.run(settings_store.get())
        supplied = request.headers.get("X-Admin-Key", "")
        expected = settings.shop_info.admin_key or ""
        return bool(expected) and hmac.compare_digest(supplied, expected)

    @app.route("/api/gemini-status")
    def gemini_status():
        return jsonify({"present": bool(os.getenv("GEMINI_API_KEY"))})

    @app.route("/api/orders")
    def order_history():
        try:
            orders = loop.run(order_store.get_history())
        except PersistenceError as e:
            return jsonify({"error": e.user_message}), 503
        return jsonify([order.to_record() for order in orders])

    @app.route("/api/orders/active")
    def active_orders():
        try:
            orders = loop.run(order_store.get_history())
        except PersistenceError as e:
            return jsonify({"error": e.user_message}), 503
        return jsonify([order.to_record() for order in active_oldest_first(orders)])

    @app.route("/api/orders/current")
    def current_order():
        order = tracker.order
        if order is None:
            return jsonify({"order": None, "cancel_seconds_remaining": 0})
        remaining = tracker.time_remaining_for_cancellation(datetime.now(timezone.utc))
        return jsonify({"order": order.to_record(), "cancel_seconds_remaining": int(remaining.total_seconds())})

    @app.route("/api/orders/<order_id>/cancel", methods=["POST"])
    def cancel_order(order_id):
        if tracker.order is not None and tracker.order.id == order_id:
            if not loop.run(tracker.cancel(datetime.now(timezone.utc))):
                return jsonify({"error": "Could not cancel order."}), 409
            return jsonify({"id": order_id, "status": OrderStatus.CANCELED.value})
        try:
            loop.run(order_store.update_status(order_id, OrderStatus.CANCELED))
        except (PersistenceError, OrderTransitionError) as e:
            logger.error("Failed to cancel order %s: %s", order_id, e)
            return jsonify({"error": "Could not cancel order."}), 409
        return jsonify({"id": order_id, "status": OrderStatus.CANCELED.value})

    @app.route("/api/orders/<order_id>/status", methods=["POST"])
    def update_order_status(order_id):
        if not is_admin():
            return jsonify({"error": "Unauthorized"}), 401
        try:
            status = OrderStatus((request.get_json(silent=True) or {}).get("status"))
        except ValueError:
            return jsonify({"error": "Unknown status"}), 400
        try:
            loop.run(order_store.update_status(order_id, status))
        except OrderTransitionError as e:
            return jsonify({"error": str(e)}), 409
        except PersistenceError as e:
            logger.error("Failed to update order %s: %s", order_id, e)
            return jsonify({"error": "Could not update order."}), 503
        return jsonify({"id": order_id, "status": status.value})

    @app.route("/api/settings", methods=["GET"])
    def get_settings():
        settings = loop.run(settings_store.get()).to_dict()
        settings["shop_info"].pop("admin_key", None)
        return jsonify(settings)

    @app.route("/api/settings", methods=["PUT"])
    def save_settings():
        if not is_admin():
            return jsonify({"error": "Unauthorized"}), 401
        try:
            settings = ShopSettings.from_dict(request.get_json(force=True))
        except (TypeError, KeyError, ValueError) as e:
            return jsonify({"error": f"Invalid settings: {e}"}), 400
        try:
            loop.run(settings_store.save(settings))
        except PersistenceError as e:
            return jsonify({"error": e.user_message}), 503
        return jsonify({"status": "saved"})

    def on_order_placed(order):
        tracker.track(order)
        socketio.emit("order_placed", order.to_record())

    def make_callbacks():
        return SessionCallbacks(
            on_status_change=lambda status: socketio.emit("status", {"status": status.value}),
            on_transcription_update=lambda is_user, text: socketio.emit(
                "transcription_update", {"speaker": "user" if is_user else "model", "text": text}
            ),
            on_transcription_complete=lambda is_user, text: socketio.emit(
                "transcription_complete", {"speaker": "user" if is_user else "model", "text": text}
            ),
            on_order_placed=on_order_placed,
            on_error=lambda message: socketio.emit("error", {"message": message}),
        )

    @socketio.on("connect")
    def handle_connect():
        logger.info("Client connected")
        emit("status", {"status": "idle"})

    @socketio.on("disconnect")
    def handle_disconnect():
        logger.info("Client disconnected")
        controller = state["controller"]
        if controller is not None:
            loop.submit(controller.stop())

    @socketio.on("start_voice")
    def handle_start_voice():
        """At most one live session per server"""
        with start_lock:
            controller = state["controller"]
            starting = state["starting"]
            if (starting is not None and not starting.done()) or (controller is not None and controller.is_active):
                emit("error", {"message": "A session is already running."})
                return
            settings = loop.run(settings_store.get())
            controller = controller_factory(
                settings, order_store, flags, scheduler=scheduler, callbacks=make_callbacks()
            )
            state["controller"] = controller
            state["starting"] = loop.submit(controller.start())

    @socketio.on("stop_voice")
    def handle_stop_voice():
        controller = state["controller"]
        if controller is not None:
            loop.submit(controller.stop())

    app.extensions["voice_loop"] = loop
    app.extensions["order_tracker"] = tracker
    return app, socketio


if __name__ == "__main__":
    configure_logging()
    app, socketio = create_app()
    socketio.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "5000")), allow_unsafe_werkzeug=True)
