from travel_planner.api.server import TravelServer, create_app

__all__ = ["TravelServer", "create_app"]
