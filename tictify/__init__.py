"""tictify: payment confirmation, ticket materialization and venue
redemption for the Tictify ticketing storefront."""

__version__ = "0.3.0"
