"""
Vine Archive Harvester – Rebuild the Vine entity graph from archive JSON.

Supports:
  • Scanning text corpora (local or S3) for vine.co/v/<slug> references
  • Resolving slugs to posts and discovering their authors
  • Harvesting every profile and post of each discovered user
  • Rewriting dead CDN links to the mirror host
  • Optional media download, deduplicated per run
  • Idempotent, resumable output on disk or S3-compatible storage
"""
