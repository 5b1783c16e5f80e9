"""
Pydantic schemas for request/response validation

Field names are snake_case in Python and camelCase on the wire.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any


class OrderedAsset(BaseModel):
    """One selected gallery image, in storyboard order"""
    id: Optional[str] = Field(None, description="Storage file id (e.g. Dropbox 'id:...')")
    name: Optional[str] = Field(None, description="Display name")
    url: Optional[str] = Field(None, description="URL the gallery UI displays the image from")
    path: Optional[str] = Field(None, description="Storage path of the file")

    @field_validator('id', 'name', 'url', 'path', mode='before')
    @classmethod
    def coerce_text(cls, v):
        """Non-string values are stringified; the orchestrator decides what is usable."""
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, (dict, list)):
            return None
        return str(v)


class StartVideoRequest(BaseModel):
    """
    Request model for starting an AI social video

    Loose input is coerced rather than rejected so every failure goes through
    the `{success: false, error, code}` envelope.
    """
    gallery_id: Optional[str] = Field(None, alias="galleryId", description="Gallery the images belong to")
    ordered_assets: List[OrderedAsset] = Field(
        default_factory=list,
        alias="orderedAssets",
        description="3-5 images in the order they should appear"
    )
    duration_seconds: Any = Field(
        None,
        alias="durationSeconds",
        description="5 or 10; anything else is treated as 10"
    )

    @field_validator('gallery_id', mode='before')
    @classmethod
    def coerce_gallery_id(cls, v):
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return None

    @field_validator('ordered_assets', mode='before')
    @classmethod
    def coerce_ordered_assets(cls, v):
        if not isinstance(v, list):
            return []
        # Non-object entries still count toward the 3-5 images
        return [item if isinstance(item, dict) else {} for item in v]

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "galleryId": "gal_01HZX3",
                "orderedAssets": [
                    {"id": "id:a1", "name": "front.jpg", "url": "https://studio.example.com/img/1", "path": "/Shoots/12 Oak St/front.jpg"},
                    {"id": "id:a2", "name": "kitchen.jpg", "url": "https://studio.example.com/img/2", "path": "/Shoots/12 Oak St/kitchen.jpg"},
                    {"id": "id:a3", "name": "garden.jpg", "url": "https://studio.example.com/img/3", "path": "/Shoots/12 Oak St/garden.jpg"}
                ],
                "durationSeconds": 10
            }
        }


class StartVideoResponse(BaseModel):
    """Response model for the start endpoint"""
    success: bool
    prediction_id: Optional[str] = Field(None, alias="predictionId")
    ai_suite: Optional[Dict[str, Any]] = Field(None, alias="aiSuite", description="Quota state after the decrement")
    error: Optional[str] = None
    code: Optional[str] = None

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "success": True,
                "predictionId": "q7w2v3x0c5rmc0cm8d9r4gqk4c",
                "aiSuite": {"unlocked": True, "remainingVideos": 2, "unlockType": "paid"}
            }
        }


class PollVideoResponse(BaseModel):
    """Response model for the poll endpoint"""
    success: bool
    status: Optional[str] = Field(None, description="submitted, processing, succeeded, failed or canceled")
    video_url: Optional[str] = Field(None, alias="videoUrl", description="Share link, or the provider URL if saving failed")
    warning: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "success": True,
                "status": "succeeded",
                "videoUrl": "https://www.dropbox.com/scl/fi/abc123/AI-Social-2026-01-02T03-04-05-678Z.mp4?dl=0"
            }
        }


class HealthResponse(BaseModel):
    """Response model for health check endpoint"""
    status: str
    service: str
    version: str
