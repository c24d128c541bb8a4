from typing import Any

from flask import Blueprint, current_app, jsonify, request

from gantry.pipeline.gating import ApprovalConflict, ApprovalRegistry

approvals_bp = Blueprint("approvals", __name__)


def _registry() -> ApprovalRegistry:
    return current_app.extensions["gantry_approvals"]


@approvals_bp.route("/health")
def health_check() -> Any:
    return "OK", 200


@approvals_bp.route("/gates", methods=["GET"])
def list_gates() -> Any:
    include_resolved = request.args.get("all", "").lower() in {"1", "true", "yes"}
    channels = _registry().all() if include_resolved else _registry().pending()
    return jsonify({"gates": [channel.to_dict() for channel in channels]})


@approvals_bp.route("/gates/<gate_id>", methods=["GET"])
def get_gate(gate_id: str) -> Any:
    channel = _registry().get(gate_id)
    if channel is None:
        return jsonify({"error": f"Unknown gate '{gate_id}'"}), 404
    return jsonify(channel.to_dict())


@approvals_bp.route("/gates/<gate_id>/approve", methods=["POST"])
def approve_gate(gate_id: str) -> Any:
    return _decide(gate_id, approved=True)


@approvals_bp.route("/gates/<gate_id>/reject", methods=["POST"])
def reject_gate(gate_id: str) -> Any:
    return _decide(gate_id, approved=False)


def _decide(gate_id: str, approved: bool) -> Any:
    payload = request.get_json(silent=True) or {}
    try:
        channel = _registry().resolve(
            gate_id,
            approved=approved,
            by=payload.get("by"),
            comment=payload.get("comment"),
        )
    except KeyError:
        return jsonify({"error": f"Unknown gate '{gate_id}'"}), 404
    except ApprovalConflict as e:
        return jsonify({"error": str(e)}), 409

    return jsonify(channel.to_dict())
