"""Cross-service integration events: contracts, codec, publish and consume paths."""
