"""API layer package.

Module split:
    - `http_api`: FastAPI app factory with an OpenAI-compatible chat endpoint.
    - `cli`: command-line entrypoint for chat and maintenance jobs.
"""
