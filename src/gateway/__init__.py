# src/gateway/__init__.py — v1
