"""
Flask API routes for the privileged broker.

Every route is a thin adapter: it validates the payload shape, calls one
broker operation and wraps the result. Authorization and domain validation
happen in the managers; their errors are converted by the application's
BrokerError handler.
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response, g, jsonify

from couchbroker import __version__
from couchbroker.api.audit import audit_log_response
from couchbroker.api.auth import identify_caller
from couchbroker.api.rate_limit import limiter
from couchbroker.api import rate_limit
from couchbroker.api.responses import api_success
from couchbroker.api.validators import (
    decode_base64,
    get_payload,
    optional_bool,
    optional_str,
    require_str,
    require_str_list,
    require_uid,
)
from couchbroker.container import get_broker
from couchbroker.observability import refresh_tracked_metrics

logger = logging.getLogger("couchplay-broker")

# Type alias for Flask route returns
RouteResponse = tuple[Response, int]

# Create Blueprint
api = Blueprint("api", __name__)

api.before_request(identify_caller)
api.after_request(audit_log_response)
api.after_request(refresh_tracked_metrics)


def _caller_uid() -> int | None:
    caller = g.get("caller")
    return caller.uid if caller is not None else None


# =============================================================================
# Health and Status
# =============================================================================

@api.route("/health")
@limiter.exempt
def health() -> RouteResponse:
    """Health check endpoint."""
    broker = get_broker()
    return jsonify({
        "status": "healthy",
        "version": __version__,
        "monitor": broker.monitor.running,
        "tracked": broker.tracked_counts(),
    }), 200


@api.route("/api/version")
def version() -> RouteResponse:
    return api_success(__version__)


# =============================================================================
# Devices
# =============================================================================

@api.route("/api/devices/owner", methods=["POST"])
def change_device_owner() -> RouteResponse:
    """Hand one input device to a uid."""
    data = get_payload()
    path = require_str(data, "path")
    uid = require_uid(data, "uid")
    return api_success(get_broker().devices.change_owner(path, uid))


@api.route("/api/devices/owner/batch", methods=["POST"])
def change_device_owner_batch() -> RouteResponse:
    """Hand several devices to a uid; returns the number changed."""
    data = get_payload()
    paths = require_str_list(data, "paths")
    uid = require_uid(data, "uid")
    return api_success(get_broker().devices.change_owner_batch(paths, uid))


@api.route("/api/devices/reset", methods=["POST"])
def reset_device_owner() -> RouteResponse:
    data = get_payload()
    path = require_str(data, "path")
    return api_success(get_broker().devices.reset_owner(path))


@api.route("/api/devices/reset-all", methods=["POST"])
def reset_all_devices() -> RouteResponse:
    return api_success(get_broker().devices.reset_all())


# =============================================================================
# Users
# =============================================================================

@api.route("/api/users", methods=["POST"])
@limiter.limit(lambda: rate_limit.admin_limit)
def create_user() -> RouteResponse:
    """Create a managed account; returns its uid."""
    data = get_payload()
    username = require_str(data, "username")
    full_name = optional_str(data, "full_name", username)
    uid = get_broker().users.create_user(username, full_name)
    return api_success(uid, status_code=201)


@api.route("/api/users/<username>", methods=["DELETE"])
@limiter.limit(lambda: rate_limit.admin_limit)
def delete_user(username: str) -> RouteResponse:
    """Delete a managed account (never the caller's own)."""
    data = get_payload()
    remove_home = optional_bool(data, "remove_home", False)
    return api_success(get_broker().users.delete_user(username, remove_home, _caller_uid()))


@api.route("/api/users/<username>/managed")
def is_in_managed_group(username: str) -> RouteResponse:
    return api_success(get_broker().users.is_in_managed_group(username))


@api.route("/api/users/<username>/linger", methods=["POST"])
def enable_linger(username: str) -> RouteResponse:
    return api_success(get_broker().users.enable_linger(username))


@api.route("/api/users/<username>/linger")
def is_linger_enabled(username: str) -> RouteResponse:
    return api_success(get_broker().users.is_linger_enabled(username))


@api.route("/api/users/<username>/steam-id")
def get_user_steam_id(username: str) -> RouteResponse:
    return api_success(get_broker().files.get_user_steam_id(username))


# =============================================================================
# Runtime access
# =============================================================================

@api.route("/api/runtime-access/<int:uid>", methods=["POST"])
def setup_runtime_access(uid: int) -> RouteResponse:
    """Share the compositor's display and audio sockets with the player group."""
    return api_success(get_broker().runtime.setup_access(uid))


@api.route("/api/runtime-access/<int:uid>", methods=["DELETE"])
def remove_runtime_access(uid: int) -> RouteResponse:
    return api_success(get_broker().runtime.remove_access(uid))


# =============================================================================
# Instances
# =============================================================================

@api.route("/api/instances", methods=["POST"])
def launch_instance() -> RouteResponse:
    """Launch a compositor instance for a player; returns its pid."""
    data = get_payload()
    username = require_str(data, "username")
    compositor_uid = require_uid(data, "compositor_uid")
    args = require_str_list(data, "args")
    command = require_str(data, "command")
    env = require_str_list(data, "env")
    pid = get_broker().instances.launch_instance(username, compositor_uid, args, command, env)
    return api_success(pid, status_code=201)


@api.route("/api/instances/<int:pid>/stop", methods=["POST"])
def stop_instance(pid: int) -> RouteResponse:
    return api_success(get_broker().processes.stop(pid))


@api.route("/api/instances/<int:pid>/kill", methods=["POST"])
def kill_instance(pid: int) -> RouteResponse:
    return api_success(get_broker().processes.kill(pid))


# =============================================================================
# Shared directories
# =============================================================================

@api.route("/api/users/<username>/mounts", methods=["POST"])
def mount_shared_directories(username: str) -> RouteResponse:
    """Bind-mount ``source[|alias]`` specs into the user's home."""
    data = get_payload()
    compositor_uid = require_uid(data, "compositor_uid")
    specs = require_str_list(data, "specs")
    return api_success(get_broker().mounts.mount(username, compositor_uid, specs))


@api.route("/api/users/<username>/mounts", methods=["DELETE"])
def unmount_shared_directories(username: str) -> RouteResponse:
    return api_success(get_broker().mounts.unmount(username))


@api.route("/api/mounts", methods=["DELETE"])
def unmount_all_shared_directories() -> RouteResponse:
    return api_success(get_broker().mounts.unmount_all())


# =============================================================================
# User files
# =============================================================================

@api.route("/api/users/<username>/files/copy", methods=["POST"])
def copy_file_to_user(username: str) -> RouteResponse:
    data = get_payload()
    source = require_str(data, "source")
    target = require_str(data, "target")
    return api_success(get_broker().files.copy_file_to_user(source, target, username, _caller_uid()))


@api.route("/api/users/<username>/files/write", methods=["POST"])
def write_file_to_user(username: str) -> RouteResponse:
    """Write base64 ``content`` to ``target`` inside the user's home."""
    data = get_payload()
    content = decode_base64(data, "content")
    target = require_str(data, "target")
    return api_success(get_broker().files.write_file_to_user(content, target, username))


@api.route("/api/users/<username>/directories", methods=["POST"])
def create_user_directory(username: str) -> RouteResponse:
    data = get_payload()
    path = require_str(data, "path")
    return api_success(get_broker().files.create_user_directory(path, username))


@api.route("/api/users/<username>/acl", methods=["POST"])
def set_directory_acl(username: str) -> RouteResponse:
    data = get_payload()
    path = require_str(data, "path")
    recursive = optional_bool(data, "recursive", False)
    return api_success(get_broker().files.set_directory_acl(path, username, recursive, _caller_uid()))


@api.route("/api/users/<username>/acl/parents", methods=["POST"])
def set_path_acl_with_parents(username: str) -> RouteResponse:
    data = get_payload()
    path = require_str(data, "path")
    return api_success(get_broker().files.set_path_acl_with_parents(path, username, _caller_uid()))
