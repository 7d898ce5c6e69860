"""
Shopify Chatbot Merchant App

Backend for an embedded Shopify chatbot app, including:
- Chat and recommendation proxy with per-shop conversation limits
- Shopify OAuth install flow, billing plans and webhooks
- Partner agency referrals, commission ledger and payout CSV export
"""

__version__ = "1.0.0"
