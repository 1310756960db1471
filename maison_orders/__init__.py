# maison_orders/__init__.py
# ============================================================================
# MAISON DARIN ORDER & PAYMENT SERVICE
# ============================================================================
# Order lifecycle, payment gateway adapters and webhook reconciliation
# ============================================================================

__version__ = "1.0.0"

__all__ = ["__version__"]
