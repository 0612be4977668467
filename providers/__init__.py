"""Provider gateway: backend contract, model catalog and provider adapters."""
