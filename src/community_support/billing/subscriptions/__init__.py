"""Support plans, subscriptions and payments."""
