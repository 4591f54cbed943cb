"""adoq API service.

Main components:
- main.py: FastAPI application and health endpoints
- dependencies.py: service container wiring
- orchestrators/: the query pipeline
- tools/: Azure DevOps clients and backend selection
- composer/: prompts, output parsing and response synthesis
"""

# Avoid importing the FastAPI app at package import time.
__all__ = []
