"""clawbridge — chat platform to agent bridge with a supervising launcher."""
