"""Prompt construction package.

Module split:
    - `prompt_builder`: message lists for grounded answers, plain chat and
      history summarization.
"""
