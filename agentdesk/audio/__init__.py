"""Client-side audio playback helpers."""
