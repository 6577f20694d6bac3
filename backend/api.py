import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import uvicorn

from irma_connector import (
    ChainConflict,
    ConnectorSettings,
    DisclosureRequest,
    IRMAConnector,
    IrmaClient,
    IssuanceRequest,
    MalformedIdentifier,
    MalformedLink,
    NotFound,
    SessionError,
    SessionRegistrationFailed,
    SigningFailed,
    Ssid,
    StoreError,
    VerificationSession,
)

logger = logging.getLogger("irma_connector.api")

settings = ConnectorSettings()
connector: Optional[IRMAConnector] = None
irma_client: Optional[IrmaClient] = None


@dataclass
class SessionEntry:
    session: VerificationSession
    task: Optional[asyncio.Task] = None
    link: Optional[str] = None
    error: Optional[str] = None


sessions: Dict[str, SessionEntry] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global connector, irma_client
    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    logger.info("Starting IRMA connector API...")

    connector = IRMAConnector(settings.STORE_ENDPOINT, caching=settings.CACHING)
    irma_client = IrmaClient(
        settings.SERVER_URL,
        auth_method=settings.AUTH_METHOD,
        key=settings.KEY,
        requestor_name=settings.REQUESTOR_NAME
    )
    logger.info("Claim store: %s, IRMA server: %s", settings.STORE_ENDPOINT, settings.SERVER_URL)

    yield

    logger.info("Shutting down...")
    for entry in sessions.values():
        if entry.task and not entry.task.done():
            entry.task.cancel()
    await asyncio.gather(*(e.task for e in sessions.values() if e.task), return_exceptions=True)
    sessions.clear()
    await irma_client.aclose()
    await connector.aclose()


app = FastAPI(title="IRMA Claim Connector API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ClaimBody(BaseModel):
    did: str
    privkey: str
    data: Any


class ReadBody(BaseModel):
    link: str
    did: Optional[str] = None
    privkey: Optional[str] = None


class ClaimAs(BaseModel):
    did: str
    privkey: str


class IssueBody(BaseModel):
    credential: str
    attributes: Dict[str, Any]
    claim_as: Optional[ClaimAs] = None


class DiscloseBody(BaseModel):
    attributes: List[str]
    claim_as: Optional[ClaimAs] = None


def demo_issuance_request() -> IssuanceRequest:
    """Demo BVV credential from the discipl IRMA example"""
    return IssuanceRequest(
        credential="irma-demo.discipl.demoBVV",
        attributes={
            "calculatedBVV": "892.5",
            "debtCollector": "Sanne Voorspoed",
            "incomeUsedForBVV": "1050"
        }
    )


# ============================================================
# CLAIM ENDPOINTS
# ============================================================

@app.get("/api/info")
async def get_info():
    """Connector name and configured collaborators"""
    return {
        "name": connector.get_name(),
        "store": settings.STORE_ENDPOINT,
        "irma_server": settings.SERVER_URL
    }


@app.post("/api/claims")
async def make_claim(body: ClaimBody):
    """
    Express a claim for did

    Returns:
        Link to the new or already existing claim
    """
    try:
        link = await connector.claim(body.did, body.privkey, body.data)
    except MalformedIdentifier as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SigningFailed as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ChainConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except TypeError as e:
        raise HTTPException(status_code=400, detail=f"Claim data is not JSON: {e}")

    return {"link": link}


@app.post("/api/claims/read")
async def read_claim(body: ReadBody):
    """
    Read a claim, as the reader identified by did/privkey if given

    Denied and missing claims look the same.
    """
    ssid = Ssid(body.did, body.privkey) if body.did and body.privkey else None
    try:
        return await connector.get(body.link, ssid)
    except MalformedLink as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.get("/api/claims/{link}/did")
async def get_did_of_claim(link: str):
    """Did that made the claim behind link"""
    try:
        return {"link": link, "did": await connector.get_did_of_claim(link)}
    except MalformedLink as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.get("/api/dids/{did}/latest")
async def get_latest_claim(did: str):
    """Link to the latest claim of did"""
    try:
        return {"did": did, "link": await connector.get_latest_claim(did)}
    except MalformedIdentifier as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e))


# ============================================================
# IRMA SESSION ENDPOINTS
# ============================================================

def _discard(token: str, entry: SessionEntry):
    if sessions.get(token) is entry:
        del sessions[token]
        logger.debug("Discarded session %s", token)


async def _follow(entry: SessionEntry, claim_as: Optional[ClaimAs]):
    """
    Wait for the session and record the result as a claim if asked

    The finished entry stays readable for SESSION_RETENTION seconds, then
    it is discarded.
    """
    try:
        if claim_as is not None:
            entry.link = await connector.claim_session_result(claim_as.did, claim_as.privkey, entry.session)
        else:
            await entry.session.wait()
    except SessionError as e:
        entry.error = str(e)
    except Exception as e:
        logger.exception("Recording session %s failed", entry.session.token)
        entry.error = str(e)
    finally:
        asyncio.get_running_loop().call_later(
            max(settings.SESSION_RETENTION, 0), _discard, entry.session.token, entry
        )


async def _start(request, claim_as: Optional[ClaimAs]) -> Dict[str, Any]:
    if claim_as is not None:
        try:
            connector.key_manager.from_did(claim_as.did, claim_as.privkey)
        except MalformedIdentifier as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SigningFailed as e:
            raise HTTPException(status_code=403, detail=str(e))

    session = VerificationSession(
        irma_client,
        request,
        policy=settings.session_policy(),
        locale=settings.LANGUAGE
    )
    try:
        package = await session.start()
    except SessionRegistrationFailed as e:
        raise HTTPException(status_code=502, detail=str(e))

    entry = SessionEntry(session=session)
    entry.task = asyncio.create_task(_follow(entry, claim_as))
    sessions[package.token] = entry

    return {
        "token": package.token,
        "sessionPtr": package.session_ptr,
        "status": session.status.value
    }


@app.post("/api/sessions/issue")
async def start_issuance(body: IssueBody):
    """
    Start an IRMA issuance session

    The returned sessionPtr is what the IRMA app scans.
    """
    return await _start(IssuanceRequest(body.credential, body.attributes), body.claim_as)


@app.post("/api/sessions/disclose")
async def start_disclosure(body: DiscloseBody):
    """Start an IRMA disclosure session for the given attribute ids"""
    return await _start(DisclosureRequest(body.attributes), body.claim_as)


@app.post("/api/sessions/demo")
async def start_demo_issuance(claim_as: Optional[ClaimAs] = None):
    """Issue the demo BVV credential"""
    return await _start(demo_issuance_request(), claim_as)


@app.get("/api/sessions/{token}")
async def get_session(token: str):
    """Current status of a session"""
    entry = sessions.get(token)
    if entry is None:
        raise HTTPException(status_code=404, detail="Session not found")

    session = entry.session
    return {
        "token": token,
        "status": session.status.value,
        "history": [status.value for status in session.history],
        "attributes": session.result.attributes if session.result else None,
        "link": entry.link,
        "error": entry.error
    }


@app.delete("/api/sessions/{token}")
async def cancel_session(token: str):
    """Abort a running session"""
    entry = sessions.get(token)
    if entry is None:
        raise HTTPException(status_code=404, detail="Session not found")

    await entry.session.cancel()
    return {"token": token, "status": entry.session.status.value}


if __name__ == "__main__":
    uvicorn.run("api:app", host="0.0.0.0", port=8000)
