"""Resource models, replica suggestion, scale-target discovery, batched scaling and a webhook handler for self-hosted CI runner fleets."""

__version__ = "0.1.0"