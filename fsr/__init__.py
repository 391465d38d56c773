"""Fleet State Reconciler (FSR).

Single-host convergence tool. Each run reads a declared fleet (containers,
background processes, git-built services and one reverse tunnel), compares it
with what the host is actually running and changes only what differs:
 - ensures prerequisites (directories, secret backend session, container network)
 - keeps the tunnel up, handing it over to a fresh process on code changes
 - starts stopped processes and containers, pulling images for opted-in services
 - clones, updates, builds and redeploys git-backed services
 - reports a heartbeat to an external uptime monitor

Runs are idempotent: a second run against a converged host changes nothing.
"""
