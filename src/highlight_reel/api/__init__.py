"""
HTTP API for the highlight reel pipeline.

Endpoints:
- Row-update trigger from the tracking store (status-change watcher)
- Upload status listing for the mobile client
- Health check
"""

import hmac
import logging

from flask import Blueprint, request, jsonify

from highlight_reel.push import DispatchError
from highlight_reel.watcher import TriggerPayloadError

logger = logging.getLogger(__name__)


def create_api(watcher, projection, webhook_secret: str = ""):
    """Create API blueprint with injected dependencies."""

    api = Blueprint("api", __name__)

    def authorized() -> bool:
        if not webhook_secret:
            return True
        header = request.headers.get("Authorization", "")
        return hmac.compare_digest(header, f"Bearer {webhook_secret}")

    @api.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    # =========================================================================
    # Trigger Endpoint
    # =========================================================================

    @api.route("/hooks/upload-status", methods=["POST"])
    def upload_status_changed():
        """
        Receive an ``uploads`` row UPDATE from the tracking store.

        Responses:
        - 200 {"skipped": true, "reason": ...}
        - 200 {"sent": true, "result": <gateway receipt>}
        - 400 {"error": ...} for a malformed payload
        - 500 {"error": ...} when the push could not be sent
        """
        if not authorized():
            return jsonify({"error": "Unauthorized"}), 401

        payload = request.get_json(silent=True)

        try:
            result = watcher.handle_payload(payload)
        except TriggerPayloadError as e:
            logger.error(f"Malformed trigger payload: {e}")
            return jsonify({"error": str(e)}), 400
        except DispatchError as e:
            return jsonify({"error": str(e)}), 500
        except Exception as e:
            logger.exception("Trigger handling failed")
            return jsonify({"error": str(e)}), 500

        return jsonify(result.to_response())

    # =========================================================================
    # Upload Endpoints
    # =========================================================================

    @api.route("/api/v1/uploads", methods=["GET"])
    def list_uploads():
        """List a user's uploads, newest first."""
        owner_id = request.args.get("owner_id")
        if not owner_id:
            return jsonify({"error": "Missing owner_id"}), 400

        uploads = projection.list_uploads(owner_id)

        return jsonify({
            "uploads": [u.to_dict() for u in uploads],
            "count": len(uploads),
        })

    return api
