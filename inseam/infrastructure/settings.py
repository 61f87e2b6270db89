"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os

# Environment
ENV = os.getenv("INSEAM_ENV", "development")

# API Configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("INSEAM_LOG_LEVEL", "INFO")

# Google Cloud / Gemini
GOOGLE_CLOUD_PROJECT = os.getenv("GOOGLE_CLOUD_PROJECT")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-001")  # Vertex AI model
GEMINI_LOCATION = os.getenv("GEMINI_LOCATION", "us-central1")
GEMINI_MAX_TOKENS = int(os.getenv("GEMINI_MAX_TOKENS", "2048"))
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.1"))

# Nylas email connector
NYLAS_API_URI = os.getenv("NYLAS_API_URI", "https://api.us.nylas.com/v3")
NYLAS_CLIENT_ID = os.getenv("NYLAS_CLIENT_ID")
NYLAS_API_KEY = os.getenv("NYLAS_API_KEY")

# OAuth redirect allow-list (comma separated, supports *.domain and localhost:port)
ALLOWED_REDIRECT_DOMAINS = [
    d.strip()
    for d in os.getenv("ALLOWED_REDIRECT_DOMAINS", "localhost:3000,localhost:3001").split(",")
    if d.strip()
]


def is_production() -> bool:
    """Check if running in production"""
    return ENV == "production"


def is_development() -> bool:
    """Check if running in development"""
    return ENV == "development"
