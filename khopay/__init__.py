"""KhoAugment Pay: payment gateway integration and reconciliation for the KhoAugment POS."""

__version__ = "1.0.0"
