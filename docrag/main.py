"""Quart application exposing the ingestion and query APIs as JSON."""
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from quart import Quart, jsonify, request

from docrag import config
from docrag.errors import (
    EmbeddingUnavailable,
    InvalidDocumentError,
    InvalidQueryError,
    StoreConnectionError,
)
from docrag.log import configure_logging
from docrag.models import Document
from docrag.service import RagService

configure_logging()

logger = structlog.get_logger()


class DocumentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_id: str = Field(min_length=1, max_length=512)
    content: str
    title: Optional[str] = None
    origin: Optional[str] = None
    version: Optional[str] = None
    metadata: Dict[str, Any] = {}

    @field_validator("content")
    @classmethod
    def _has_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content cannot be empty")
        return value


class QueryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1, max_length=2000)
    top_k: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)
    document_ids: Optional[List[str]] = None


def _validation_details(error: ValidationError) -> List[Dict[str, Any]]:
    return [
        {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
        for e in error.errors()
    ]


def create_app(service: Optional[RagService] = None) -> Quart:
    """Build the application around ``service`` (a default one if omitted)."""
    app = Quart(__name__)
    rag = service or RagService()

    @app.before_serving
    async def startup():
        await rag.open()
        logger.info("app_started", env=config.APP_ENV, index=rag.retriever.index.name)

    @app.after_serving
    async def shutdown():
        await rag.close()
        logger.info("app_stopped")

    @app.route("/api/documents", methods=["POST"])
    async def submit_document():
        """Queue a document for ingestion.

        Expects JSON body:
        {
            "document_id": "stable id",
            "content": "document text",
            "title": "optional", "origin": "optional", "version": "optional",
            "metadata": {}
        }

        Returns 202 with the job id to poll at /api/jobs/<job_id>.
        """
        data = await request.get_json(silent=True)
        body = DocumentRequest.model_validate(data if data is not None else {})

        job_id = rag.submit(Document(**body.model_dump()))
        logger.info(
            "document_submitted",
            job_id=job_id,
            document_id=body.document_id,
            content_length=len(body.content),
        )
        return jsonify({"job_id": job_id, "document_id": body.document_id}), 202

    @app.route("/api/documents", methods=["GET"])
    async def list_documents():
        limit = request.args.get("limit", default=100, type=int)
        documents = await rag.list_documents(limit=max(1, min(limit, 1000)))
        return jsonify({"documents": documents})

    @app.route("/api/documents/<path:document_id>", methods=["DELETE"])
    async def delete_document(document_id: str):
        if await rag.delete_document(document_id):
            return "", 204
        return jsonify({"error": "Document not found"}), 404

    @app.route("/api/jobs/<job_id>", methods=["GET"])
    async def get_job(job_id: str):
        job = rag.get_status(job_id)
        if job is None:
            return jsonify({"error": "Job not found"}), 404
        return jsonify(job.to_dict())

    @app.route("/api/jobs/<job_id>", methods=["DELETE"])
    async def cancel_job(job_id: str):
        job = rag.get_status(job_id)
        if job is None:
            return jsonify({"error": "Job not found"}), 404
        if not rag.cancel(job_id):
            return jsonify({"error": "Job already finished", "state": job.state.value}), 409
        return jsonify({"job_id": job_id, "cancelled": True}), 202

    @app.route("/api/query", methods=["POST"])
    async def query():
        """Answer a question from the ingested documents.

        Expects JSON body:
        {
            "query": "question text",
            "top_k": 8,              // optional
            "timeout": 60,           // optional, seconds for generation
            "document_ids": ["..."]  // optional filter
        }

        Returns the answer with citations, or "answered": false with the
        retrieved sources when generation failed.
        """
        data = await request.get_json(silent=True)
        body = QueryRequest.model_validate(data if data is not None else {})

        logger.info(
            "query_request_received",
            query_length=len(body.query),
            top_k=body.top_k,
            filtered=body.document_ids is not None,
        )
        outcome = await rag.query(
            body.query, top_k=body.top_k, timeout=body.timeout, document_ids=body.document_ids
        )
        return jsonify(outcome.to_dict())

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - database and model server reachable."""
        checks = await rag.health()
        status_code = 200 if checks["status"] == "healthy" else 503
        return jsonify(checks), status_code

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(ValidationError)
    async def invalid_request(error):
        return jsonify({"error": "Invalid request", "details": _validation_details(error)}), 400

    @app.errorhandler(InvalidDocumentError)
    @app.errorhandler(InvalidQueryError)
    async def invalid_input(error):
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(EmbeddingUnavailable)
    @app.errorhandler(StoreConnectionError)
    async def unavailable(error):
        logger.error("dependency_unavailable", error=str(error), error_type=type(error).__name__)
        return jsonify({"error": "Service temporarily unavailable"}), 503

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    async def internal_error(error):
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    return app


app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
