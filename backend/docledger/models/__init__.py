from .documents import Document, DocumentLine, DocumentSequence
from .payments import Payment, Allocation
from .returns import Return, ReturnLine
from .events import LedgerEvent

__all__ = [
    'Document', 'DocumentLine', 'DocumentSequence',
    'Payment', 'Allocation',
    'Return', 'ReturnLine',
    'LedgerEvent',
]
