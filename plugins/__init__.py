"""Host-side helpers shared by tool panels."""
