from bson.objectid import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from database import db
from rewards import RedemptionError, balance_summary, redemption_discount
from security import get_current_user

router = APIRouter(prefix="/api/loyalty", tags=["loyalty"])


class RedeemBody(BaseModel):
    coins: int = Field(..., gt=0)
    order_value: float = Field(..., gt=0)


@router.get("/balance")
def get_balance(user=Depends(get_current_user)):
    return balance_summary(user)


@router.post("/redeem")
def redeem(body: RedeemBody, user=Depends(get_current_user)):
    balance = (user.get("activity") or {}).get("harvest_coins", 0)
    try:
        discount = redemption_discount(body.coins, balance, body.order_value)
    except RedemptionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    # only debit if the balance still covers it
    res = db["user"].update_one(
        {"_id": ObjectId(user["id"]), "activity.harvest_coins": {"$gte": body.coins}},
        {"$inc": {"activity.harvest_coins": -body.coins}},
    )
    if res.modified_count == 0:
        raise HTTPException(status_code=400, detail="Insufficient Harvest Coins")
    return {"discountValue": discount, "coinsRemaining": balance - body.coins}
