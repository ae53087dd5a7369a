"""keel.blueprints — Blueprints bundled with keel."""
