"""Flask application factory for the kernel status and control API.

The ``create_app`` function wires a kernel manager, evidence store and
edge router for one project and returns a Flask app with these
endpoints:

- ``GET /api/kernels`` — status of every kernel.
- ``GET /api/kernels/<name>`` — status of one kernel.
- ``POST /api/kernels/<name>/start`` — start a kernel.
- ``POST /api/kernels/<name>/stop`` — stop a kernel.
- ``GET /api/kernels/<name>/instances`` — list instances (``?limit=N``).
- ``POST /api/kernels/<name>/route`` — route ``{"instance": id}``.
- ``GET /api/edges`` — list the project's edges.

Runtime errors become JSON ``{"error": ..., "type": ...}`` responses:
404 for missing things, 409 for conflicts, 400 for bad input.
"""

from __future__ import annotations

from pathlib import Path

from flask import Flask, Response, jsonify, request

from py_ckp.config import RuntimeConfig
from py_ckp.edge.registry import EdgeRegistry
from py_ckp.edge.router import EdgeRouter
from py_ckp.errors import (
    AlreadyExistsError,
    CkpError,
    InvalidFormatError,
    InvalidTransitionError,
    NotFoundError,
)
from py_ckp.logging import project_logger
from py_ckp.manager import KernelManager
from py_ckp.project.registry import ProjectRegistry
from py_ckp.storage.evidence import EvidenceStore

_HTTP_BAD_REQUEST = 400
_HTTP_NOT_FOUND = 404
_HTTP_CONFLICT = 409
_HTTP_SERVER_ERROR = 500


def _status_for(error: CkpError) -> int:
    if isinstance(error, NotFoundError):
        return _HTTP_NOT_FOUND
    if isinstance(error, AlreadyExistsError):
        return _HTTP_CONFLICT
    if isinstance(error, InvalidFormatError | InvalidTransitionError):
        return _HTTP_BAD_REQUEST
    return _HTTP_SERVER_ERROR


def create_app(
    project_root: Path,
    *,
    config: RuntimeConfig | None = None,
    manager: KernelManager | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        project_root: The project to serve.
        config: Runtime configuration (defaults to ``CKP_*`` variables).
        manager: Kernel manager to use (built from *config* if omitted).

    Returns:
        A configured Flask application ready to serve.

    """
    runtime = config or RuntimeConfig.from_env()
    logger = project_logger(project_root, runtime.log_level)
    projects = ProjectRegistry(config=runtime, logger=logger)
    kernels = manager or KernelManager(
        project_root, registry=projects, config=runtime, logger=logger
    )
    evidence = EvidenceStore(project_root, logger=logger)
    edges = EdgeRegistry(project_root, projects=projects, logger=logger)
    router = EdgeRouter(project_root, edges=edges, logger=logger)

    app = Flask(__name__)

    @app.errorhandler(CkpError)
    def runtime_error(error: CkpError) -> tuple[Response, int]:  # pyright: ignore[reportUnusedFunction]
        """Render a runtime error as JSON."""
        body = {"error": str(error), "type": type(error).__name__}
        return jsonify(body), _status_for(error)

    @app.route("/api/kernels")
    def list_kernels() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return the status of every kernel."""
        return jsonify({"kernels": [s.to_dict() for s in kernels.status_all()]})

    @app.route("/api/kernels/<name>")
    def kernel_status(name: str) -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return the status of one kernel."""
        return jsonify(kernels.status(name).to_dict())

    @app.route("/api/kernels/<name>/start", methods=["POST"])
    def start_kernel(name: str) -> Response:  # pyright: ignore[reportUnusedFunction]
        """Start a kernel and return its fresh status."""
        result = kernels.start(name)
        body = kernels.status(name).to_dict()
        body["exitCode"] = result.exit_code
        return jsonify(body)

    @app.route("/api/kernels/<name>/stop", methods=["POST"])
    def stop_kernel(name: str) -> Response:  # pyright: ignore[reportUnusedFunction]
        """Stop a kernel.

        Returns:
            JSON with the stopped pids and whether SIGKILL was needed.

        """
        result = kernels.stop(name)
        return jsonify(
            {
                "name": result.kernel,
                "stopped": [record.pid for record in result.stopped],
                "forced": result.forced,
            }
        )

    @app.route("/api/kernels/<name>/instances")
    def list_instances(name: str) -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """List a kernel's instances, optionally limited by ``?limit=N``."""
        limit_text = request.args.get("limit", "0")
        if not limit_text.isdigit():
            return jsonify({"error": "limit must be a non-negative integer"}), _HTTP_BAD_REQUEST
        rows = evidence.list_instances(name, limit=int(limit_text))
        return jsonify(
            {
                "kernel": name,
                "instances": [
                    {"id": row.id, "kernel": row.kernel, "timestamp": row.timestamp}
                    for row in rows
                ],
            }
        )

    @app.route("/api/kernels/<name>/route", methods=["POST"])
    def route_instance(name: str) -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Route one instance along the kernel's outgoing edges.

        Expects JSON body: ``{"instance": "<id>"}``

        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data.get("instance"):
            return jsonify({"error": "Missing 'instance' field"}), _HTTP_BAD_REQUEST
        outcome = router.route(str(data["instance"]), name)
        return jsonify(outcome.to_dict())

    @app.route("/api/edges")
    def list_edges() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return every edge of the project."""
        return jsonify({"edges": [edge.to_dict() for edge in edges.list_edges()]})

    return app


def main() -> None:
    """Serve the current directory's project.

    This is the ``py-ckp-web`` console entry point.
    """
    app = create_app(Path.cwd())
    app.run(debug=False, port=8080)
