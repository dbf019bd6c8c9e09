"""Checkout API routers."""
