"""Remote state storage, locking and coordination."""
