"""Conflict detection and resolution, sync orchestration, and webhook handling."""
