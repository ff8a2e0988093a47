# nutrizen/models/__init__.py
"""Pydantic request/response models shared by services and routers."""
