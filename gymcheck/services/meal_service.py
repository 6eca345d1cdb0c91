"""Meal photo scan endpoint: detect foods, then attach food-database suggestions.

The photo arrives either as a multipart ``photo`` upload or as base64 in a JSON
body (``image_base64``, or ``imageBase64`` from older clients).

Run (from repo root):
  uvicorn gymcheck.services.meal_service:app --host 0.0.0.0 --port 8001
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field, ValidationError
from starlette.datastructures import UploadFile

from gymcheck.services.collaborators import StaticFoodLookup
from gymcheck.services.envelope import DATE_KEY_RE
from gymcheck.services.envelope import error_response as _error
from gymcheck.services.meal_scan import MealFailure, MealItem, analyze_meal
from gymcheck.shared.contract import message_for
from gymcheck.shared.preprocess import Rejection, prepare_meal_image
from gymcheck.shared.settings import get_settings

LOGGER = logging.getLogger(__name__)

router = APIRouter()

FOOD_LOOKUP = StaticFoodLookup()


class MealScanRequest(BaseModel):
    image_base64: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("image_base64", "imageBase64")
    )
    mime: Optional[str] = None
    date_key: Optional[str] = Field(default=None, validation_alias=AliasChoices("date_key", "dateKey"))


def decode_image_base64(raw: Optional[str]) -> Optional[bytes]:
    """Decode plain base64 or a ``data:`` URL; ``None`` when unusable or empty."""

    text = (raw or "").strip()
    if text.startswith("data:") and "," in text:
        text = text.split(",", 1)[1]
    if not text:
        return None
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None
    return data or None


def enrich_item(item: MealItem, limit: int = 3) -> Dict[str, Any]:
    suggestions: List[Dict[str, Any]] = FOOD_LOOKUP.search(item.label, limit)
    if not suggestions and item.macros_per_100g:
        suggestions = [{"food_id": "", "name": item.label, "macros_per_100g": dict(item.macros_per_100g)}]
    item.suggested_foods = suggestions
    out = item.as_dict()
    if "macros_per_100g" not in out and suggestions and suggestions[0].get("macros_per_100g"):
        out["macros_per_100g"] = suggestions[0]["macros_per_100g"]
    return out


def _upload_mime(upload: UploadFile) -> Optional[str]:
    ctype = (upload.content_type or "").split(";")[0].strip().lower()
    return ctype if ctype.startswith("image/") else None


async def _read_photo(upload: UploadFile, max_bytes: int) -> Optional[bytes]:
    # One byte past the ceiling is enough for the preconditioner to say too_large.
    data = await upload.read(max_bytes + 1)
    return data or None


async def _image_from_request(
    request: Request, max_bytes: int
) -> Tuple[Optional[bytes], Optional[str], Optional[str], Optional[str]]:
    """Returns (image bytes, mime, date_key, error message)."""

    ctype = request.headers.get("content-type", "").lower()
    if ctype.startswith("multipart/form-data"):
        form = await request.form()
        try:
            date_key = form.get("date_key") or form.get("dateKey")
            date_key = date_key if isinstance(date_key, str) else None
            photo = form.get("photo")
            if isinstance(photo, UploadFile):
                return await _read_photo(photo, max_bytes), _upload_mime(photo), date_key, None
            raw = form.get("image_base64") or form.get("imageBase64")
            mime = form.get("mime")
            return (
                decode_image_base64(raw if isinstance(raw, str) else None),
                mime if isinstance(mime, str) else None,
                date_key,
                None,
            )
        finally:
            await form.close()

    try:
        req = MealScanRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return None, None, None, "Request body must be JSON with image_base64 or a multipart photo."
    return decode_image_base64(req.image_base64), req.mime, req.date_key, None


@router.post("/api/me/nutrition/scan-meal")
async def scan_meal(
    request: Request,
    x_user_id: Optional[str] = Header(default=None),
) -> JSONResponse:
    if not (x_user_id or "").strip():
        return _error("unauthorized", "Authentication required.", status_code=401)

    settings = get_settings()
    data, mime, date_key, body_error = await _image_from_request(request, settings.meal_max_upload_bytes)
    if body_error is not None:
        return _error("invalid_input", body_error, status_code=400)
    if date_key and not DATE_KEY_RE.match(date_key):
        return _error("invalid_input", "date_key must be YYYY-MM-DD", status_code=400)
    if data is None:
        LOGGER.info("[meal-scan] invalid_input: image missing or undecodable")
        return _error("invalid_input", message_for("invalid_input"), status_code=400)

    prepared = prepare_meal_image(data, mime or None, max_bytes=settings.meal_max_upload_bytes)
    if isinstance(prepared, Rejection):
        return _error(prepared.code, prepared.message, status_code=400)

    result = await analyze_meal(
        prepared.data,
        prepared.mime,
        api_key=settings.openrouter_api_key,
        models=settings.openrouter_meal_models,
        timeout_s=settings.meal_timeout_s,
        max_retries=settings.max_retries,
    )
    if isinstance(result, MealFailure):
        return _error(result.code, result.message, status_code=503, data={"ok": False, "items": []})

    return JSONResponse(
        status_code=200,
        content={
            "ok": True,
            "source": result.source,
            "model": result.model,
            "items": [enrich_item(item) for item in result.items],
            "notes": result.notes,
        },
    )


app = FastAPI(title="gymcheck meal scan", version="0.1")
app.include_router(router)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8001)
