"""Audio preprocessing (ffmpeg-driven mono downmix) and artifact storage."""
