from .inventory import Product, StockMovement
from .customers import Customer, LoyaltyRule, LoyaltyTransaction
from .sales import Sale, SaleItem
from .returns import Return, ReturnItem, RefundTransaction
from .bnpl import BnplTransaction, BnplPayment
from .ledger import CashLedgerEntry, Expense
from .system import Setting, DocumentSequence, IdempotencyRecord

__all__ = [
    'Product', 'StockMovement',
    'Customer', 'LoyaltyRule', 'LoyaltyTransaction',
    'Sale', 'SaleItem',
    'Return', 'ReturnItem', 'RefundTransaction',
    'BnplTransaction', 'BnplPayment',
    'CashLedgerEntry', 'Expense',
    'Setting', 'DocumentSequence', 'IdempotencyRecord',
]
