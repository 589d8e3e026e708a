"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .company import CustomerCompanyFactory
from .location import LocationFactory
from .invoice import InvoiceFactory, InvoiceLineFactory

__all__ = [
    "CustomerCompanyFactory",
    "LocationFactory",
    "InvoiceFactory",
    "InvoiceLineFactory",
]
