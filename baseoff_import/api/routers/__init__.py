"""
FastAPI routers for the import API.

``imports`` covers uploads, driver invocations and duplicate checks;
``jobs`` is the read-only polling surface.
"""
