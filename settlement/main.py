import stripe
import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from settlement.database import Base, engine, get_db
from settlement.engine import PaymentEngine
from settlement.errors import GatewayError, SettlementError
from settlement.log import configure_logging
from settlement.routes import get_payment_engine, router
from settlement.stripe_service import (
    SESSION_ASYNC_FAILED,
    SESSION_ASYNC_SUCCEEDED,
    SESSION_COMPLETED,
    SESSION_EXPIRED,
    SETTLED_PAYMENT_STATUSES,
    construct_event,
)

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Payment Settlement Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    logger.warning("request.rejected", path=request.url.path, reason=exc.reason.value, message=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.reason.value, "message": exc.message},
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    logger.error("request.gateway_failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=502, content={"detail": "gateway_error"})


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    payments: PaymentEngine = Depends(get_payment_engine),
):
    payload = await request.body()

    try:
        event = construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event["type"]
    session = event["data"]["object"]
    session_id = session["id"] if "id" in session else None
    logger.info("webhook.received", event_type=event_type, session_id=session_id)

    if not session_id:
        return {"ok": True}

    if event_type == SESSION_COMPLETED:
        payment_status = session["payment_status"] if "payment_status" in session else "paid"
        if payment_status in SETTLED_PAYMENT_STATUSES:
            await run_in_threadpool(payments.confirm_external_success, db, session_id)
    elif event_type == SESSION_ASYNC_SUCCEEDED:
        await run_in_threadpool(payments.confirm_external_success, db, session_id)
    elif event_type == SESSION_EXPIRED:
        await run_in_threadpool(payments.cancel_external, db, session_id)
    elif event_type == SESSION_ASYNC_FAILED:
        await run_in_threadpool(payments.fail_external, db, session_id)
    else:
        logger.info("webhook.ignored", event_type=event_type)

    return {"ok": True}
