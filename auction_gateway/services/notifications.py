"""Notification fan-out for committed bids and settlements"""

from auction_gateway.domain.events import BidUpdateEvent, NewBidEvent, OutbidEvent, PaymentSettledEvent
from auction_gateway.domain.models import BidPlacement, SettlementResult
from auction_gateway.infrastructure.realtime.publisher import EventPublisher, auction_channel, user_channel


class NotificationFanout:
    """Turns committed state changes into channel events"""

    def __init__(self, publisher: EventPublisher):
        self.publisher = publisher

    def bid_placed(self, placement: BidPlacement) -> None:
        """
        Broadcast the new price on the auction channel, then tell earlier
        bidders privately: `outbid` for the bidder who just lost the lead,
        `new_bid` for the rest.
        """
        auction = placement.auction
        self.publisher.publish(
            auction_channel(auction.id),
            BidUpdateEvent(
                auction_id=auction.id,
                current_price=auction.current_price,
                bidder_id=placement.bid.bidder_id,
                amount=placement.bid.amount,
                timestamp=placement.bid.timestamp,
                bid_count=len(auction.bids),
            ),
        )

        for user_id in placement.prior_bidder_ids:
            if user_id == placement.previous_leader_id:
                event = OutbidEvent(auction_id=auction.id, auction_name=auction.name, new_price=auction.current_price)
            else:
                event = NewBidEvent(auction_id=auction.id, auction_name=auction.name, new_price=auction.current_price)
            self.publisher.publish(user_channel(user_id), event)

    def payment_settled(self, result: SettlementResult) -> None:
        if result.already_processed or result.user_id is None:
            return
        self.publisher.publish(
            user_channel(result.user_id),
            PaymentSettledEvent(transaction_id=result.transaction_id, amount=result.amount),
        )
