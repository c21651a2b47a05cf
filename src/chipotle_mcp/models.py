from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class MealContent(BaseModel):
    """A side, drink or entree filling as the order service expects it."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    menu_item_id: str = Field(alias="menuItemId")
    menu_item_name: str = Field(default="", alias="menuItemName")
    quantity: int = 1
    is_up_sell: bool = Field(default=False, alias="isUpSell")
    customization_id: Optional[int] = Field(default=None, alias="customizationId")

    def payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class MealEntree(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    menu_item_id: str = Field(alias="menuItemId")
    menu_item_name: str = Field(alias="menuItemName")
    quantity: int = 1
    contents: list[MealContent] = Field(default_factory=list)

    def payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
