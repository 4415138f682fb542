from coupon_wallet.models.coupon import Coupon, CouponRedemption
from coupon_wallet.models.wallet import Wallet
from coupon_wallet.models.qr_token import QrToken
from coupon_wallet.models.store import Store, StoreBillingProfile, StoreSubscription, SubscriptionPlan
from coupon_wallet.models.event import Event
