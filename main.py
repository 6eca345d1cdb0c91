import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gymcheck.services.meal_service import router as meal_router
from gymcheck.services.presence_service import router as presence_router
from gymcheck.shared.settings import get_settings

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="gymcheck", version="0.1")
app.include_router(presence_router)
app.include_router(meal_router)


# Errors come back as JSON, not HTML
@app.exception_handler(404)
async def custom_404_handler(request: Request, __):
    return JSONResponse(
        status_code=404,
        content={"detail": "Not Found", "path": request.url.path},
    )


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Cross-Origin-Resource-Policy"] = "same-origin"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    # Verification verdicts are per-user; keep proxies from caching them.
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

    return response


@app.get("/health")
def health():
    settings = get_settings()
    return {
        "status": "ok",
        "remote_configured": bool(settings.openrouter_api_key),
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
