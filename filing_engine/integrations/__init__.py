"""filing_engine.integrations — External service gateway modules.

All outbound calls to regulator systems must go through a gateway in this
package, never via bare `requests` calls in services or blueprints.

Every HTTP call is:
  - Authenticated (token injected by the gateway)
  - Retried with backoff on transport errors
  - Circuit-broken to prevent cascade failures
  - Logged with a payload hash, never the payload itself

Current gateways:
  submission_gateway.HttpSubmissionGateway    — regulator filing endpoint
  submission_gateway.SandboxSubmissionGateway — local acceptor for dev/test
"""
