"""Retrieval package.

Module split:
    - `retriever`: retrieval index protocol, FAISS-backed implementation and the
      knowledge-availability check used by the classifier.
"""
