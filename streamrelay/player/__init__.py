"""
Playback core.

Event-driven state management for one stream at a time:

- classifier: protocol family and DRM parameters of a source URL
- engines: contracts of the opaque segmented, manifest and native engines
- backends: one adapter per protocol family behind a common surface
- timeline: playable window reconciliation and clock formatting
- state: pure session state transitions
- scope: timers and listener registrations released together
- session: the session state machine with retry, recovery and load deadline
- seek: progress bar gestures
- failover: switching between candidate sources on fatal errors
"""
