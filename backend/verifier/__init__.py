"""
Verification and autoclaim for imported speedrun.com runs.
Finalizes taxonomy on pending runs, rejects bad ones, and assigns unclaimed
runs to players by their speedrun.com username.
"""
