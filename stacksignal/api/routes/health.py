from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok", "service": "stack-signal"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}
