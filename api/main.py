from __future__ import annotations

import os
import uuid
from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from contracts.schemas import GeoPoint, Geofence, Location, as_utc
from eligibility_policy import DEFAULT_POLICY


class PointIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class LocationIn(PointIn):
    accuracy_meters: Optional[float] = Field(default=None, ge=0)


class GeofenceIn(PointIn):
    radius_meters: float = Field(gt=0)


class CapsuleLockIn(BaseModel):
    unlock_timestamp: datetime
    geofence: Optional[GeofenceIn] = None


class EligibilityRequest(BaseModel):
    capsule: CapsuleLockIn
    location: Optional[LocationIn] = None
    now: Optional[datetime] = None


class DistanceRequest(BaseModel):
    a: PointIn
    b: PointIn


class _Lock:
    """Just the fields the evaluator reads."""

    def __init__(self, body: CapsuleLockIn) -> None:
        self.unlock_timestamp = as_utc(body.unlock_timestamp)
        self.geofence = (
            Geofence(
                latitude=body.geofence.latitude,
                longitude=body.geofence.longitude,
                radius_meters=body.geofence.radius_meters,
            )
            if body.geofence is not None
            else None
        )


app = FastAPI(title="Capsule Vault Core API", version="0.3.0")


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["x-request-id"] = rid
    return response


def _require_api_key(x_api_key: Optional[str]) -> None:
    required = os.getenv("CAPSULE_API_KEY", "")
    if not required:
        # no key set => auth disabled (dev-friendly)
        return
    if not x_api_key or x_api_key != required:
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/eligibility")
def eligibility(request: Request, req: EligibilityRequest, x_api_key: Optional[str] = Header(default=None)) -> dict[str, Any]:
    _require_api_key(x_api_key)

    location = (
        Location(
            latitude=req.location.latitude,
            longitude=req.location.longitude,
            accuracy_meters=req.location.accuracy_meters,
        )
        if req.location is not None
        else None
    )
    result = DEFAULT_POLICY.evaluate(_Lock(req.capsule), now=req.now, location=location)

    out = result.to_dict()
    out["request_id"] = getattr(request.state, "request_id", None)
    out["advisory"] = True
    return out


@app.post("/v1/distance")
def distance(req: DistanceRequest, x_api_key: Optional[str] = Header(default=None)) -> dict[str, float]:
    _require_api_key(x_api_key)
    meters = DEFAULT_POLICY.distance_between(
        GeoPoint(req.a.latitude, req.a.longitude),
        GeoPoint(req.b.latitude, req.b.longitude),
    )
    return {"meters": meters}
