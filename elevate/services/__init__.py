"""Business services for the webhook pipeline."""
