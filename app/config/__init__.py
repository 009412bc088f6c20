# =============================================================================
# Django Project Configuration Package
# =============================================================================
# Settings for the payments engine. There is no URL configuration or
# ASGI/WSGI application; the engine is consumed as a library.
# =============================================================================
