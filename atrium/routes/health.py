"""GET /health: liveness, scheduler state and in-flight transfers."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    transfers = request.app.state.gateway.transfers
    return {
        "status": "ok",
        "scheduler": "running" if request.app.state.scheduler.running else "stopped",
        "transfers": {
            "uploads_in_flight": transfers.uploads_in_flight,
            "downloads_in_flight": transfers.downloads_in_flight,
        },
    }
