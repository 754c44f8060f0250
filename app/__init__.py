# ============================================================================
# Prompt Market Payments
# HTTP Application Package
# ============================================================================
