"""
zksig: legally binding signatures on PDFs kept encrypted in IPFS.

- zksig.cid           content identifiers (UnixFS file node, dag-pb, sha2-256)
- zksig.crypto_utils  signature-derived keys and fixed-nonce secretbox
- zksig.storage       blob store capability (HTTP upload + gateway, in-memory)
- zksig.agreements    agreement model, slot constraints, ledger, protocol flows
"""

__version__ = "0.1.0"
