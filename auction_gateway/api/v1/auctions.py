"""Auction endpoints - read state and place bids"""

import time
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from auction_gateway.api.v1.schemas import AuctionResponse, BidRequest, BidResponse, BidSchema
from auction_gateway.api.dependencies import Principal, get_bid_engine, get_principal, get_request_id
from auction_gateway.domain.exceptions import (
    AuctionEndedError,
    AuctionNotFoundError,
    BidTooLowError,
    SelfBidError,
    StateConflictError,
    TransientStoreError,
)
from auction_gateway.domain.models import AuctionSnapshot, BidRecord
from auction_gateway.infrastructure.database.repositories import AuctionRepository, to_snapshot
from auction_gateway.infrastructure.database.session import get_db
from auction_gateway.infrastructure.observability.logging import log_bid_outcome
from auction_gateway.infrastructure.observability.metrics import record_bid
from auction_gateway.services.bidding import BidEngine

router = APIRouter()

# Status code and metric label per rejection
BID_REJECTIONS = (
    (AuctionNotFoundError, 404, "not_found"),
    (SelfBidError, 403, "self_bid"),
    (AuctionEndedError, 400, "ended"),
    (BidTooLowError, 400, "too_low"),
    (StateConflictError, 409, "conflict"),
)


def bid_schema(bid: BidRecord) -> BidSchema:
    return BidSchema(bidder_id=bid.bidder_id, amount=bid.amount, timestamp=bid.timestamp)


def auction_response(auction: AuctionSnapshot) -> AuctionResponse:
    return AuctionResponse(
        id=auction.id,
        name=auction.name,
        seller_id=auction.seller_id,
        starting_price=auction.starting_price,
        current_price=auction.current_price,
        end_time=auction.end_time,
        status=auction.status,
        bids=[bid_schema(b) for b in auction.bids],
    )


@router.get("/auctions/{auction_id}", response_model=AuctionResponse)
def get_auction(auction_id: str, db: Session = Depends(get_db)):
    auction = AuctionRepository(db).get_auction(auction_id)
    if auction is None:
        raise HTTPException(status_code=404, detail=str(AuctionNotFoundError(auction_id)))
    return auction_response(to_snapshot(auction))


@router.post("/auctions/{auction_id}/bids", response_model=BidResponse)
def place_bid(
    auction_id: str,
    request_body: BidRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    engine: BidEngine = Depends(get_bid_engine),
):
    """
    Place a bid on an auction.

    Flow:
    1. Bid engine validates and applies the bid atomically
    2. Real-time events are published for the committed state
    3. Outcome is logged and counted
    """
    start_time = time.time()
    request_id = get_request_id(request)

    def finish(outcome: str) -> None:
        duration_ms = (time.time() - start_time) * 1000
        record_bid(outcome)
        log_bid_outcome(request_id, auction_id, principal.user_id, request_body.amount, outcome, duration_ms)

    try:
        placement = engine.place_bid(auction_id, principal.user_id, request_body.amount)

    except TransientStoreError as e:
        finish("unavailable")
        logging.error(f"Bid store error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Auction service unavailable, please retry")

    except (AuctionNotFoundError, StateConflictError) as e:
        for error_cls, status_code, outcome in BID_REJECTIONS:
            if isinstance(e, error_cls):
                finish(outcome)
                raise HTTPException(status_code=status_code, detail=str(e))
        raise

    finish("accepted")
    return BidResponse(auction=auction_response(placement.auction), bid=bid_schema(placement.bid))
