"""HTTP surface over the cached ledgers."""
import logging
import math

from flask import Flask, jsonify, request
from flask_cors import CORS

from holder_ledger.errors import ConfigurationError
from holder_ledger.ledger import is_valid_ledger

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000

STATUS_MESSAGES = {
    "in_progress": "Synchronization in progress, poll the progress endpoint",
    "up_to_date": "Ledger already at the chain head",
    "updated": "Ledger updated from new Transfer events",
    "completed": "Ledger rebuilt",
}


def create_app(service, store, settings):
    app = Flask(__name__)
    CORS(app,
         resources={r"/api/*": {"origins": settings.cors_origins}},
         supports_credentials=True)

    def populating_response(state):
        return jsonify({
            "isCachePopulating": True,
            "progressState": state.progress.to_dict(),
            "totalOwners": state.total_owners,
            "totalLiveHolders": state.total_live_holders,
            "lastProcessedBlock": state.last_processed_block,
        }), 202

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    @app.route("/api/holders/<contract>", methods=["GET"])
    def get_holders(contract):
        try:
            sync = service.synchronizer(contract)
        except ConfigurationError as e:
            return jsonify({"error": str(e)}), 400
        key = sync.key

        try:
            page = int(request.args.get("page", 0))
            page_size = int(request.args.get("pageSize", settings.default_page_size))
        except ValueError:
            return jsonify({"error": "page and pageSize must be integers"}), 400
        if page < 0 or not 1 <= page_size <= MAX_PAGE_SIZE:
            return jsonify({"error": f"page must be >= 0 and pageSize within 1..{MAX_PAGE_SIZE}"}), 400
        wallet = (request.args.get("wallet") or "").strip().lower()

        state = store.load_state(key)
        if service.is_running(key) or sync.holds_live_lock(state):
            return populating_response(state)

        cached = store.get(f"{key}_holders")
        if not is_valid_ledger(cached):
            logger.info(f"No cached ledger for {key}, starting a synchronization")
            try:
                service.trigger(key, wait=0)
            except Exception as e:
                logger.error(f"Synchronization of {key} failed: {e}")
                return jsonify({"error": str(e)}), 500
            return populating_response(store.load_state(key))

        holders = cached["holders"]
        if wallet:
            holders = [h for h in holders if h["wallet"] == wallet]
        metrics = state.global_metrics
        return jsonify({
            "holders": holders[page * page_size:(page + 1) * page_size],
            "totalPages": math.ceil(len(holders) / page_size),
            "totalTokens": sum(h["total"] for h in holders),
            "totalBurned": cached["totalBurned"],
            "summary": {
                "totalLive": metrics.get("totalLive", 0),
                "totalHolders": metrics.get("totalHolders", len(cached["holders"])),
                "totalBurned": cached["totalBurned"],
                "multiplierPool": metrics.get("multiplierPool", 0),
                "tierDistribution": metrics.get("tierDistribution", []),
            },
            "globalMetrics": metrics,
        })

    @app.route("/api/holders/<contract>", methods=["POST"])
    def sync_holders(contract):
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            body = {}
        force = bool(body.get("forceUpdate", False))
        try:
            result = service.trigger(contract, force_update=force, wait=settings.request_wait_seconds)
        except ConfigurationError as e:
            return jsonify({"status": "error", "message": str(e)}), 400
        except Exception as e:
            logger.error(f"Error in sync_holders for {contract}: {e}")
            return jsonify({"status": "error", "message": str(e)}), 500

        status = "in_progress" if result.status in ("pending", "in_progress") else result.status
        code = 202 if status == "in_progress" else 200
        return jsonify({"status": status, "message": STATUS_MESSAGES.get(status, status)}), code

    @app.route("/api/holders/<contract>/progress", methods=["GET"])
    def get_progress(contract):
        try:
            key = service.synchronizer(contract).key
        except ConfigurationError as e:
            return jsonify({"error": str(e)}), 400
        data = store.load_state(key).to_dict()
        data["isRunning"] = service.is_running(key)
        return jsonify(data)

    return app
