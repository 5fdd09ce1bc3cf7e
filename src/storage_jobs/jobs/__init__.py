"""Task definitions, the task registry and the dispatcher running them."""
