from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Product(BaseModel):
    """Canonical catalog record, whatever the catalog source."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    reference: str = ""
    name: str = ""
    description: str = ""
    price: Optional[float] = None
    price_tax_incl: Optional[float] = Field(default=None, alias="priceTaxIncl")
    stock: Optional[int] = None
    image_id: Optional[str] = Field(default=None, alias="imageId")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    product_url: Optional[str] = Field(default=None, alias="productUrl")
    active: bool = True


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Literal["user", "assistant"]
    content: str
    timestamp: str
    products: Optional[List[Product]] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    image_base64: Optional[str] = Field(default=None, alias="imageBase64")


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    device_id: str = Field(alias="deviceId")
    products: List[Product] = []


class HistoryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[Message]
    session_date: str = Field(alias="sessionDate")
    message_count: int = Field(alias="messageCount")


class ClearRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: Optional[str] = Field(default=None, alias="deviceId")


class WidgetConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bot_name: str = Field(alias="botName")
    welcome_message: str = Field(alias="welcomeMessage")
    primary_color: str = Field(alias="primaryColor")
    position: str
