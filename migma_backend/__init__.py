# migma_backend/__init__.py
# ============================================================================
# MIGMA PAYMENTS BACKEND
# ============================================================================
# Checkout creation against Parcelow and Wise, webhook reconciliation and
# post-payment fan-out (PDFs, emails, funnel tracking, automation webhook).
# ============================================================================

__version__ = "1.0.0"
