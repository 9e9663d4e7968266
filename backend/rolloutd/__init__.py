"""
Rollout controller: turns "new image pushed" into "cluster running the new
image", retiring old replicas only once the new ones are healthy.
"""

__version__ = "1.0.0"
