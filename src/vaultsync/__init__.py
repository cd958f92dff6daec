"""
vaultsync - end-to-end encrypted password vault with multi-device sync.

Keys are derived from the master password on the device; the server
stores only AES-GCM blobs and a version counter per identity.
"""

__version__ = "1.0.0"
