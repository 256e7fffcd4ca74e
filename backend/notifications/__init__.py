"""Multi-channel notification dispatch (email, SMS, web push, real-time)."""
