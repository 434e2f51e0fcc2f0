"""LocalDesk audio core: dictation sidecar supervision and model provisioning.

WHY: Live dictation in the LocalDesk desktop assistant runs in an external
speech-recognition process (the asr-sidecar). That process needs model
files on disk before it can start, and its output is a line-oriented JSON
stream that has to be validated before anything reaches the UI. This
package owns both halves: getting the models onto disk safely, and driving
the sidecar once they are there.

HOW: Two subpackages plus shared plumbing:
  assets     - manifest loading, readiness checks, verified downloads
  dictation  - sidecar wire protocol decoding and session supervision
  events     - in-process event bus the host UI layer subscribes to
  server/cli - thin control surfaces over the same operations

RULES:
- Recoverable conditions are reported as events, never as exceptions
- Malformed caller input raises synchronously
- A model file is only ever installed after size and checksum verification
"""

__version__ = "0.1.0"
