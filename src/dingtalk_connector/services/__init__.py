"""DingTalk API clients and supporting services."""
