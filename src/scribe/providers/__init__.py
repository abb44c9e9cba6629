"""Transcription providers -- cloud and on-device backends behind one router.

Every backend turns an audio file into a transcript plus structured
insights (summary, action items, key topics, sentiment). ProviderRouter
picks a backend from the model id prefix and resolves whose key pays.
"""
