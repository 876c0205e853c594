from nodeward.actors.controller import NodePoolController, controller_actor, pool_worker_actor

__all__ = [
    "NodePoolController",
    "controller_actor",
    "pool_worker_actor",
]
