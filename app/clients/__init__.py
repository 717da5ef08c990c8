from .video_provider import DailyClient, RoomAlreadyExists
from .payment_provider import StripePaymentClient, PaymentIntent

__all__ = ["DailyClient", "RoomAlreadyExists", "StripePaymentClient", "PaymentIntent"]
