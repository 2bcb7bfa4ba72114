"""Reference implementation of the storefront API the client talks to:
payments, webhook-driven ticket creation and one-time redemption."""
