"""FastAPI application."""
from fastapi import FastAPI
from imagestore.endpoints import router
from imagestore.logging_config import setup_logging

setup_logging()

app = FastAPI(
    title="Original Image Store",
    description="Deduplicated original photos with reference-counted cleanup and storage reconciliation",
    version="1.0.0"
)

# Include API router
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Original Image Store",
        "version": "1.0.0",
        "endpoints": {
            "upload": "POST /v1/images",
            "get": "GET /v1/images/{image_id}",
            "presign": "GET /v1/images/{image_id}/presign",
            "delete": "DELETE /v1/images/{image_id}",
            "original": "GET /v1/originals/{content_hash}",
            "stats": "GET /v1/originals/stats",
            "orphan_cleanup": "POST /v1/admin/originals/cleanup",
            "reconcile": "POST /v1/admin/reconcile/images",
            "cleanup_queued": "POST /v1/admin/reconcile/cleanup-queued"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
