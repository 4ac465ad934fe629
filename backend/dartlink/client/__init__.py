"""Client-side match layers: RPC gateway, feed listener, reconciliation, lobby and gameplay.

Nothing here touches the database; all state comes from the gateway and the feed.
"""
