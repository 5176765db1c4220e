from .catalog import Store, Product, ProductVariant
from .sales import Order, OrderItem
from .inventory import InventoryMovement, MOVEMENT_TYPES
from .loyalty import LoyaltyAccount, LoyaltyTransaction, LoyaltyReward, RewardRedemption, tier_for_points
from .incidents import CheckoutIncident

__all__ = [
    'Store', 'Product', 'ProductVariant',
    'Order', 'OrderItem',
    'InventoryMovement', 'MOVEMENT_TYPES',
    'LoyaltyAccount', 'LoyaltyTransaction', 'LoyaltyReward', 'RewardRedemption', 'tier_for_points',
    'CheckoutIncident',
]
