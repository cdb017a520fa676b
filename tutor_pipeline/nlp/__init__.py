"""Natural-language routing package.

Module split:
    - `intent_router`: embedding-based intent classifier with reference-cue
      override and knowledge-availability fallback.
"""
