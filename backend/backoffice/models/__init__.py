from .submissions import Submission, Card
from .groups import Group, GroupSubmission, GroupCard
from .billing import Invoice, InvoiceItem, InvoiceSubmission
from .admin import AdminUser, AdminSession

__all__ = [
    'Submission', 'Card',
    'Group', 'GroupSubmission', 'GroupCard',
    'Invoice', 'InvoiceItem', 'InvoiceSubmission',
    'AdminUser', 'AdminSession',
]
