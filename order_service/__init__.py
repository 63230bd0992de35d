"""Storefront order core: checkout, inventory reservation and order lifecycle."""
