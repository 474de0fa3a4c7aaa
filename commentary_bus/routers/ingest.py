import hmac
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from commentary_bus.models import RenderedMessage
from commentary_bus.registry import ServiceRegistry, get_registry
from commentary_bus.schemas import IngestRequest, IngestResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ingest"])

DEFAULT_SPEAKER = "System"


def require_token(
    registry: ServiceRegistry = Depends(get_registry),
    authorization: Optional[str] = Header(default=None),
    x_auth_token: Optional[str] = Header(default=None),
) -> None:
    expected = registry.settings.CBUS_TOKEN
    if not expected:
        return
    supplied = x_auth_token or ""
    if authorization and authorization.startswith("Bearer "):
        supplied = authorization[len("Bearer "):]
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        logger.warning("Rejected /ingest request with bad token")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/ingest", response_model=IngestResponse, dependencies=[Depends(require_token)])
async def ingest(
    body: IngestRequest,
    registry: ServiceRegistry = Depends(get_registry),
) -> IngestResponse:
    text = body.text or ""
    if not text.strip():
        raise HTTPException(status_code=400, detail="Missing text")

    channel = registry.hub.channel(body.channel)
    message = RenderedMessage(
        channel=channel,
        speaker_name=body.name or DEFAULT_SPEAKER,
        text=text,
        subtype=None,
        timestamp=time.time() * 1000,
    )
    sequence_id = registry.hub.publish(channel, message)
    return IngestResponse(ok=True, channel=channel, id=sequence_id)
