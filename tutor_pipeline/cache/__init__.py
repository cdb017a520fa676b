"""Answer cache and tier routing package.

Module split:
    - `answer_cache`: exact and semantic answer caches on the fast store.
    - `tier_router`: cheapest-tier-first answer resolution.
"""
