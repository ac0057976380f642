from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    UploadFile,
)

from medtracker.api.schemas import (
    Envelope,
    FcmTokenRequest,
    ForgotPasswordRequest,
    GlobalMedicineRequest,
    ImageUploadResponse,
    LoginRequest,
    MedicineRequest,
    ProfileRequest,
    RegisterRequest,
    ScheduleRequest,
    to_auth_response,
    to_catalog_fields,
    to_global_medicine_response,
    to_medicine_draft,
    to_medicine_response,
    to_medicine_with_profile_response,
    to_profile_response,
    to_schedule_response,
)
from medtracker.logging import get_logger
from medtracker.service.auth import Identity
from medtracker.service.errors import AuthenticationError
from medtracker.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


async def get_identity(request: Request) -> Identity:
    """Identity resolved by the authentication middleware for this request."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise AuthenticationError("authentication required")
    return identity


def _deleted(resource_id: str) -> Envelope:
    return Envelope(status="ok", data={"id": resource_id, "deleted": True})


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.register, body.email, body.password)
    return Envelope(status="ok", data=to_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.login, body.email, body.password)
    return Envelope(status="ok", data=to_auth_response(result))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Set a new password; every token issued before the reset stops validating."""
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.auth.reset_password, body.email, body.new_password
    )
    return Envelope(status="ok", data=to_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    authorization: Optional[str] = Header(None),
    identity: Identity = Depends(get_identity),
):
    token = extract_bearer_token(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    runtime.auth.logout(token)
    logger.info("logout", user_id=identity.user_id)
    return Envelope(status="ok", data={"logged_out": True})


# users


@router.post("/users/fcm-token", response_model=Envelope, tags=["users"])
async def update_fcm_token(
    body: FcmTokenRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    runtime.users.update_fcm_token(identity, body.fcm_token)
    return Envelope(status="ok", data={"updated": True})


# profiles


@router.get("/profiles", response_model=Envelope, tags=["profiles"])
async def list_profiles(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    profiles = runtime.profiles.list(identity)
    return Envelope(status="ok", data=[to_profile_response(p) for p in profiles])


@router.post("/profiles", response_model=Envelope, status_code=201, tags=["profiles"])
async def create_profile(body: ProfileRequest, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    profile = runtime.profiles.create(identity, body.name)
    return Envelope(status="ok", data=to_profile_response(profile))


@router.get("/profiles/{profile_id}", response_model=Envelope, tags=["profiles"])
async def get_profile(
    profile_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    profile = runtime.profiles.get(identity, profile_id)
    return Envelope(status="ok", data=to_profile_response(profile))


@router.put("/profiles/{profile_id}", response_model=Envelope, tags=["profiles"])
async def update_profile(
    body: ProfileRequest,
    profile_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    profile = runtime.profiles.update(identity, profile_id, body.name)
    return Envelope(status="ok", data=to_profile_response(profile))


@router.delete("/profiles/{profile_id}", response_model=Envelope, tags=["profiles"])
async def delete_profile(
    profile_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    """Delete a profile, its schedules, and deactivate its medicines."""
    runtime = get_runtime()
    runtime.profiles.delete(identity, profile_id)
    return _deleted(profile_id)


@router.get("/profiles/{profile_id}/medicines", response_model=Envelope, tags=["medicines"])
async def list_profile_medicines(
    profile_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    medicines = runtime.medicines.list_for_profile(identity, profile_id)
    return Envelope(status="ok", data=[to_medicine_response(m) for m in medicines])


@router.post(
    "/profiles/{profile_id}/medicines",
    response_model=Envelope,
    status_code=201,
    tags=["medicines"],
)
async def create_medicine(
    body: MedicineRequest,
    profile_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    medicine = runtime.medicines.create(identity, profile_id, to_medicine_draft(body))
    return Envelope(status="ok", data=to_medicine_response(medicine))


@router.put(
    "/profiles/{profile_id}/medicines/{medicine_id}",
    response_model=Envelope,
    tags=["medicines"],
)
async def update_medicine(
    body: MedicineRequest,
    profile_id: str = Path(..., pattern=_ID_PATTERN),
    medicine_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    medicine = runtime.medicines.update(
        identity, profile_id, medicine_id, to_medicine_draft(body)
    )
    return Envelope(status="ok", data=to_medicine_response(medicine))


@router.delete(
    "/profiles/{profile_id}/medicines/{medicine_id}",
    response_model=Envelope,
    tags=["medicines"],
)
async def delete_medicine(
    profile_id: str = Path(..., pattern=_ID_PATTERN),
    medicine_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    runtime.medicines.delete(identity, profile_id, medicine_id)
    return _deleted(medicine_id)


@router.post(
    "/profiles/{profile_id}/medicines/{medicine_id}/takedose",
    response_model=Envelope,
    tags=["medicines"],
)
async def take_dose(
    profile_id: str = Path(..., pattern=_ID_PATTERN),
    medicine_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    medicine = runtime.medicines.take_dose(identity, profile_id, medicine_id)
    return Envelope(status="ok", data=to_medicine_response(medicine))


@router.get("/profiles/{profile_id}/schedules", response_model=Envelope, tags=["schedules"])
async def list_profile_schedules(
    profile_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    schedules = runtime.schedules.list_for_profile(identity, profile_id)
    return Envelope(status="ok", data=[to_schedule_response(s) for s in schedules])


# medicines


@router.get("/medicines", response_model=Envelope, tags=["medicines"])
async def list_medicines(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    rows = runtime.medicines.list_with_profile(identity)
    return Envelope(
        status="ok",
        data=[to_medicine_with_profile_response(m, name) for m, name in rows],
    )


@router.post(
    "/medicines/upload-image",
    response_model=Envelope,
    status_code=201,
    tags=["medicines"],
)
async def upload_medicine_image(
    medicine_image: UploadFile = File(..., alias="medicineImage"),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    max_bytes = runtime.settings.image_max_bytes
    # read one byte past the limit so oversize uploads are detectable
    data = await medicine_image.read(max_bytes + 1)
    url = await asyncio.to_thread(
        runtime.images.upload, data, medicine_image.content_type
    )
    logger.info("medicine_image_uploaded", user_id=identity.user_id)
    return Envelope(status="ok", data=ImageUploadResponse(url=url))


@router.delete("/medicines/images", response_model=Envelope, tags=["medicines"])
async def delete_medicine_image(
    url: str = Query(..., min_length=1, max_length=2048),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    removed = await asyncio.to_thread(runtime.images.delete, url)
    if not removed:
        raise _http_error("not_found", "image not found", status_code=404)
    return Envelope(status="ok", data={"url": url, "deleted": True})


@router.get("/medicines/{medicine_id}", response_model=Envelope, tags=["medicines"])
async def get_medicine(
    medicine_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    medicine = runtime.medicines.get(identity, medicine_id)
    return Envelope(status="ok", data=to_medicine_response(medicine))


@router.get("/medicines/{medicine_id}/schedules", response_model=Envelope, tags=["schedules"])
async def list_medicine_schedules(
    medicine_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    schedules = runtime.schedules.list_for_medicine(identity, medicine_id)
    return Envelope(status="ok", data=[to_schedule_response(s) for s in schedules])


@router.post(
    "/medicines/{medicine_id}/schedules",
    response_model=Envelope,
    status_code=201,
    tags=["schedules"],
)
async def create_schedule(
    body: ScheduleRequest,
    medicine_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    schedule = runtime.schedules.create(
        identity,
        medicine_id,
        body.time_of_day,
        frequency=body.frequency,
        is_active=body.is_active,
    )
    return Envelope(status="ok", data=to_schedule_response(schedule))


# schedules


@router.get("/schedules", response_model=Envelope, tags=["schedules"])
async def list_schedules(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    schedules = runtime.schedules.list_for_user(identity)
    return Envelope(status="ok", data=[to_schedule_response(s) for s in schedules])


@router.get("/schedules/{schedule_id}", response_model=Envelope, tags=["schedules"])
async def get_schedule(
    schedule_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    schedule = runtime.schedules.get(identity, schedule_id)
    return Envelope(status="ok", data=to_schedule_response(schedule))


@router.put("/schedules/{schedule_id}", response_model=Envelope, tags=["schedules"])
async def update_schedule(
    body: ScheduleRequest,
    schedule_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    schedule = runtime.schedules.update(
        identity,
        schedule_id,
        body.time_of_day,
        frequency=body.frequency,
        is_active=body.is_active,
    )
    return Envelope(status="ok", data=to_schedule_response(schedule))


@router.delete("/schedules/{schedule_id}", response_model=Envelope, tags=["schedules"])
async def delete_schedule(
    schedule_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    runtime.schedules.delete(identity, schedule_id)
    return _deleted(schedule_id)


# global medicine catalog; reads are public


@router.get("/global-medicines", response_model=Envelope, tags=["catalog"])
async def list_global_medicines():
    runtime = get_runtime()
    entries = runtime.catalog.list()
    return Envelope(status="ok", data=[to_global_medicine_response(e) for e in entries])


@router.get("/global-medicines/search", response_model=Envelope, tags=["catalog"])
async def search_global_medicines(name: str = Query(..., min_length=1, max_length=200)):
    runtime = get_runtime()
    entries = runtime.catalog.search(name)
    return Envelope(status="ok", data=[to_global_medicine_response(e) for e in entries])


@router.get("/global-medicines/category/{category}", response_model=Envelope, tags=["catalog"])
async def list_global_medicines_by_category(
    category: str = Path(..., min_length=1, max_length=200),
):
    runtime = get_runtime()
    entries = runtime.catalog.by_category(category)
    return Envelope(status="ok", data=[to_global_medicine_response(e) for e in entries])


@router.get("/global-medicines/{entry_id}", response_model=Envelope, tags=["catalog"])
async def get_global_medicine(entry_id: str = Path(..., pattern=_ID_PATTERN)):
    runtime = get_runtime()
    entry = runtime.catalog.get(entry_id)
    return Envelope(status="ok", data=to_global_medicine_response(entry))


@router.post("/global-medicines", response_model=Envelope, status_code=201, tags=["catalog"])
async def create_global_medicine(
    body: GlobalMedicineRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    entry = runtime.catalog.create(to_catalog_fields(body))
    logger.info("catalog_entry_created_by", user_id=identity.user_id, entry_id=entry.id)
    return Envelope(status="ok", data=to_global_medicine_response(entry))


@router.put("/global-medicines/{entry_id}", response_model=Envelope, tags=["catalog"])
async def update_global_medicine(
    body: GlobalMedicineRequest,
    entry_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    entry = runtime.catalog.update(entry_id, to_catalog_fields(body))
    return Envelope(status="ok", data=to_global_medicine_response(entry))


@router.delete("/global-medicines/{entry_id}", response_model=Envelope, tags=["catalog"])
async def delete_global_medicine(
    entry_id: str = Path(..., pattern=_ID_PATTERN),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    runtime.catalog.delete(entry_id)
    return _deleted(entry_id)
