"""Rendezvous server and client for pairing peers into rooms."""
from __future__ import annotations
