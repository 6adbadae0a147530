"""
API metadata and fixed values shared across the service.

Operational parameters that vary per environment (limits, timeouts, provider
credentials) live in config.py.
"""

API_TITLE = "Textopsy Entitlements API"
API_VERSION = "0.1.0"
API_PREFIX = "/api/v1"

# Plan name shown in emails and receipts
PRO_PLAN_DISPLAY_NAME = "Pro"
