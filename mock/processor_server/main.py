from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import os
import uuid

app = FastAPI(title="Mock Payment Processor", version="1.0.0")
# Charges above this amount are declined with 402
CHARGE_LIMIT_MINOR = int(os.environ.get("MOCK_CHARGE_LIMIT_MINOR", "10000000"))

# idempotency key -> response body
charges: dict = {}
members = {
    "alice": {"display_name": "Alice", "avatar_ref": "avatars/alice.png"},
    "bob": {"display_name": "Bob", "avatar_ref": None},
    "carol": {"display_name": "Carol", "avatar_ref": None},
}


class ChargeRequest(BaseModel):
    amount_minor: int
    currency: str
    method: str
    idempotency_key: str


@app.get("/health")
def health(): return {"status": "ok"}


@app.post("/charges")
def create_charge(body: ChargeRequest, idempotency_key: str | None = Header(None)):
    key = idempotency_key or body.idempotency_key
    if key in charges:
        return charges[key]
    if body.amount_minor > CHARGE_LIMIT_MINOR:
        return JSONResponse(status_code=402, content={"reason": "amount exceeds limit"})
    if body.method == "declined":
        result = {"status": "failed", "reason": "card declined"}
    else:
        result = {"status": "succeeded", "transaction_ref": f"txn_{uuid.uuid4().hex[:12]}"}
    charges[key] = result
    return result


@app.get("/members/{member_id}")
def get_member(member_id: str):
    if member_id not in members:
        raise HTTPException(status_code=404, detail="member not found")
    return {"member_id": member_id, **members[member_id]}
