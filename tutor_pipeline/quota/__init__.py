"""Usage quota package.

Module split:
    - `enforcer`: role-based plans, pre-checks, atomic consumption and period
      rollover.
"""
