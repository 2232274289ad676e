"""Reverse proxy from /{name}/... to the instance's published port."""
