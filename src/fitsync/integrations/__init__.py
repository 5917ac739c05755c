"""Third-party provider integrations: OAuth, adapters, webhooks and sync."""
