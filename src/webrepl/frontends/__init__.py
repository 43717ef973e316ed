"""Frontends - user interfaces built on the transports."""
