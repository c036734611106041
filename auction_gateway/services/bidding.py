"""Bid engine - the auction state machine"""

import logging
from datetime import datetime
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from auction_gateway.domain.exceptions import (
    AuctionEndedError,
    AuctionNotFoundError,
    BidTooLowError,
    SelfBidError,
    StateConflictError,
    TransientStoreError,
)
from auction_gateway.domain.models import BidPlacement, BidRecord
from auction_gateway.infrastructure.database.models import Auction
from auction_gateway.infrastructure.database.repositories import AuctionRepository, to_snapshot
from auction_gateway.services.notifications import NotificationFanout
from auction_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


def check_bid(auction: Auction | None, auction_id: str, bidder_id: str, amount: int, now: datetime) -> Auction:
    """
    Bid preconditions in order, first failure wins:
    1. auction exists
    2. bidder is not the seller
    3. auction has not ended (end_time is authoritative, status is not consulted)
    4. amount is strictly above the current price
    """
    if auction is None:
        raise AuctionNotFoundError(auction_id)
    if auction.seller_id == bidder_id:
        raise SelfBidError()
    if now > auction.end_time:
        raise AuctionEndedError()
    if amount <= auction.current_price:
        raise BidTooLowError(auction.current_price)
    return auction


class BidEngine:
    """Validates and applies bids; one database transaction per accepted bid"""

    def __init__(self, db: Session, fanout: NotificationFanout | None = None):
        self.db = db
        self.auctions = AuctionRepository(db)
        self.fanout = fanout

    def place_bid(self, auction_id: str, bidder_id: str, amount: int) -> BidPlacement:
        """
        Apply a bid.

        Flow:
        1. Check preconditions against the current row (fast, specific errors)
        2. Conditional UPDATE of current_price re-asserting the preconditions
        3. Insert the bid row in the same transaction and commit
        4. Publish events for the committed state; the snapshot is read
           before commit so nothing can fail once the bid is durable

        A concurrent bid that commits between 1 and 2 makes the UPDATE match
        nothing; the row is re-read and the specific reason reported.

        Raises:
            AuctionNotFoundError, SelfBidError, AuctionEndedError, BidTooLowError
            TransientStoreError: Database unavailable, nothing was written
        """
        now = utcnow()

        try:
            check_bid(self.auctions.get_auction(auction_id), auction_id, bidder_id, amount, now)
            if not self.auctions.raise_price(auction_id, bidder_id, amount, now):
                self.db.rollback()
                check_bid(self.auctions.get_auction(auction_id), auction_id, bidder_id, amount, utcnow())
                raise StateConflictError("Auction changed while bidding, please retry.")

            previous_leader_id = self.auctions.leading_bidder_id(auction_id)
            self.auctions.add_bid(auction_id, bidder_id, amount, now)
            prior_bidders = self.auctions.prior_bidder_ids(auction_id, exclude=bidder_id)
            snapshot = to_snapshot(self.auctions.get_auction(auction_id))
            self.db.commit()

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Bid write failed: {e}", extra={"auction_id": auction_id, "user_id": bidder_id})
            raise TransientStoreError("Auction store unavailable") from e

        except (AuctionNotFoundError, StateConflictError):
            self.db.rollback()
            raise

        placement = BidPlacement(
            auction=snapshot,
            bid=BidRecord(bidder_id=bidder_id, amount=amount, timestamp=now),
            previous_leader_id=previous_leader_id,
            prior_bidder_ids=prior_bidders,
        )

        if self.fanout is not None:
            self.fanout.bid_placed(placement)

        return placement
