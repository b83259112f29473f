from fastapi import APIRouter, Depends

from panostudio.dependencies import get_repository, get_tag_resolver
from panostudio.repository import PanoramaRepository
from panostudio.tags import TagResolver

router = APIRouter()


@router.get("/tags")
def list_tags(tags: TagResolver = Depends(get_tag_resolver)):
    """Every tag name, most used first."""
    return {"tags": tags.list_all()}


@router.get("/locations")
def list_locations(repository: PanoramaRepository = Depends(get_repository)):
    """Geotagged panoramas as a GeoJSON FeatureCollection (map view)."""
    features = []
    for location in repository.list_locations():
        features.append({
            "type": "Feature",
            "geometry": {
                "type": "Point",
                "coordinates": [location["longitude"], location["latitude"]],
            },
            "properties": {
                "id": location["id"],
                "title": location["title"],
                "location_name": location["location_name"],
                "thumbnail_url": location["thumbnail_url"],
                "date_taken": location["date_taken"],
            },
        })
    return {"type": "FeatureCollection", "features": features}
