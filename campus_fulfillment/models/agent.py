from sqlalchemy import Column, Boolean, Enum, Uuid
from enum import Enum as PyEnum
from campus_fulfillment.models.base_model import Base, BaseModel

class VehicleType(PyEnum):
    WALKING = "walking"
    BICYCLE = "bicycle"
    MOTORCYCLE = "motorcycle"
    CAR = "car"

class DeliveryAgent(BaseModel):
    __tablename__ = 'delivery_agents'

    user_id = Column(Uuid, nullable=False, unique=True, index=True)
    is_available = Column(Boolean, nullable=False, default=False, index=True)
    vehicle_type = Column(Enum(VehicleType), nullable=False, default=VehicleType.WALKING)
