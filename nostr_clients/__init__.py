"""
Nostr Client Package

Connection strings, cryptography, relay connections and the relay transport
for Nostr Wallet Connect.
"""
