"""tiny-bridge: resilient multi-tenant client for the Tiny ERP API."""
