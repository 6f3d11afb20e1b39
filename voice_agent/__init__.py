"""
Realtime voice agent for the AutoRent intake wizard.

Streams microphone audio to a live conversational backend, plays its audio
back gaplessly, and turns its tool calls into wizard state changes.
No HTTP surface here (control plane responsibility).

- Audio wire format: mono int16 LE PCM, 16 kHz out / 24 kHz in
- All behavior observable via structured events and JSON logs
- User-facing texts in Portuguese (PT-PT)
"""
