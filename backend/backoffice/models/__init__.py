from .catalog import Organization, Location, Product
from .inventory import StockRecord, StockMovement, ReferenceType, MovementDirection
from .documents import (
    Transfer, TransferItem, TransferStatus,
    Sale, SaleLine, SaleStatus,
    CreditNote, CreditNoteLine, CreditNoteApplication, CreditNoteStatus,
    Purchase, PurchaseLine, PurchaseStatus, SupplierPaymentAllocation,
)
from .marketplace import MarketplaceChannel, MarketplaceListing, MarketplacePlatform

__all__ = [
    'Organization', 'Location', 'Product',
    'StockRecord', 'StockMovement', 'ReferenceType', 'MovementDirection',
    'Transfer', 'TransferItem', 'TransferStatus',
    'Sale', 'SaleLine', 'SaleStatus',
    'CreditNote', 'CreditNoteLine', 'CreditNoteApplication', 'CreditNoteStatus',
    'Purchase', 'PurchaseLine', 'PurchaseStatus', 'SupplierPaymentAllocation',
    'MarketplaceChannel', 'MarketplaceListing', 'MarketplacePlatform',
]
