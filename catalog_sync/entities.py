"""Registry of the catalog entity types that can be loaded from CSV.

Each entity type declares where its rows are sent, which column holds its
natural key, the foreign keys it needs resolved before submission, and the
cell types used to coerce CSV strings into JSON values.
"""

from string import Formatter
from urllib.parse import quote
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from pydantic import BaseModel, Field


# Dependency kinds understood by the resolver
CATEGORY = "category"
PARENT_CATEGORY = "parent_category"
BRAND = "brand"
PRODUCT = "product"
SKU = "sku"
FIELD = "field"
FIELD_VALUE = "field_value"


class Dependency(BaseModel):
    """A foreign key that must be turned into a remote id."""

    kind: str
    column: str
    target: str
    required: bool = True
    in_body: bool = True

    model_config = {"frozen": True}


class EntityType(BaseModel):
    """How one kind of catalog record is keyed, resolved and submitted."""

    name: str
    description: str = ""
    key_column: str
    create_method: str = "POST"
    create_path: str
    update_method: str = "PUT"
    update_path: Optional[str] = None
    dependencies: Tuple[Dependency, ...] = ()
    column_types: Dict[str, str] = Field(default_factory=dict)
    self_lookup: Optional[str] = None
    self_target: str = "Id"
    artifact_headers: Tuple[str, str] = ("RefId", "Id")
    prepare: Optional[Callable[[Dict[str, Any]], None]] = None

    model_config = {"frozen": True}

    @property
    def reference_columns(self) -> List[str]:
        """CSV columns that carry unresolved references rather than API fields."""
        return [dep.column for dep in self.dependencies]

    @property
    def parent_dependency(self) -> Optional[Dependency]:
        """The dependency pointing at another row of the same type, if any."""
        for dep in self.dependencies:
            if dep.kind == PARENT_CATEGORY:
                return dep
        return None

    def dependency_kinds(self) -> List[str]:
        return [dep.kind for dep in self.dependencies]

    def route(self, action: str) -> Tuple[str, str]:
        """Get (method, path template) for an action."""
        if action == "import":
            return self.create_method, self.create_path
        if action == "update":
            if self.update_path is None:
                raise ValueError(f"{self.name} does not support updates")
            return self.update_method, self.update_path
        raise ValueError(f"Unknown action: {action}")


def path_fields(template: str) -> List[str]:
    """Names of the placeholders in a path template."""
    return [name for _, name, _, _ in Formatter().parse(template) if name]


def render_path(template: str, values: Mapping[str, Any]) -> str:
    """Fill a path template with escaped segments.

    Raises KeyError naming the first missing field.
    """
    filled = {}
    for name in path_fields(template):
        value = values.get(name)
        if value is None or value == "":
            raise KeyError(name)
        filled[name] = quote(str(value), safe="")
    return template.format(**filled)


def _category_prepare(payload: Dict[str, Any]) -> None:
    # The catalog has no field for our identifier, so it rides along in
    # AdWordsRemarketingCode where later loads can find it.
    identifier = payload.get("UniqueIdentifier")
    if identifier and not payload.get("AdWordsRemarketingCode"):
        payload["AdWordsRemarketingCode"] = identifier


_CATEGORY_REF = Dependency(kind=CATEGORY, column="CategoryUniqueIdentifier", target="CategoryId")

ENTITY_TYPES: Dict[str, EntityType] = {
    "category": EntityType(
        name="category",
        description="Category tree nodes; parents may be created in the same file",
        key_column="UniqueIdentifier",
        create_path="catalog/pvt/category",
        update_path="catalog/pvt/category/{Id}",
        dependencies=(
            Dependency(
                kind=PARENT_CATEGORY,
                column="ParentUniqueIdentifier",
                target="FatherCategoryId",
                required=False,
            ),
        ),
        column_types={
            "Id": "int",
            "FatherCategoryId": "int",
            "GlobalCategoryId": "int",
            "Score": "int",
            "IsActive": "bool",
            "ShowInStoreFront": "bool",
            "ShowBrandFilter": "bool",
            "ActiveStoreFrontLink": "bool",
        },
        self_lookup=CATEGORY,
        artifact_headers=("UniqueIdentifier", "CategoryId"),
        prepare=_category_prepare,
    ),
    "brand": EntityType(
        name="brand",
        key_column="Name",
        create_path="catalog/pvt/brand",
        update_path="catalog/pvt/brand/{Id}",
        column_types={"Id": "int", "Score": "int", "Active": "bool", "MenuHome": "bool"},
        self_lookup=BRAND,
        artifact_headers=("Name", "BrandId"),
    ),
    "specificationgroup": EntityType(
        name="specificationgroup",
        key_column="Name",
        create_path="catalog/pvt/specificationgroup",
        update_path="catalog/pvt/specificationgroup/{Id}",
        dependencies=(_CATEGORY_REF.model_copy(update={"required": False}),),
        column_types={"Id": "int", "CategoryId": "int", "Position": "int"},
        artifact_headers=("Name", "GroupId"),
    ),
    "specification": EntityType(
        name="specification",
        key_column="Name",
        create_path="catalog/pvt/specification",
        update_path="catalog/pvt/specification/{Id}",
        dependencies=(_CATEGORY_REF.model_copy(update={"required": False}),),
        column_types={
            "Id": "int",
            "FieldTypeId": "int",
            "CategoryId": "int",
            "FieldGroupId": "int",
            "Position": "int",
            "IsFilter": "bool",
            "IsRequired": "bool",
            "IsOnProductDetails": "bool",
            "IsStockKeepingUnit": "bool",
            "IsWizard": "bool",
            "IsActive": "bool",
            "IsTopMenuLinkActive": "bool",
            "IsSideMenuLinkActive": "bool",
        },
        artifact_headers=("Name", "FieldId"),
    ),
    "specificationvalue": EntityType(
        name="specificationvalue",
        key_column="Name",
        create_path="catalog/pvt/specificationvalue",
        update_path="catalog/pvt/specificationvalue/{FieldValueId}",
        dependencies=(
            _CATEGORY_REF.model_copy(update={"required": False, "in_body": False}),
            Dependency(kind=FIELD, column="FieldName", target="FieldId"),
        ),
        column_types={"FieldValueId": "int", "FieldId": "int", "Position": "int", "IsActive": "bool"},
        artifact_headers=("Name", "FieldValueId"),
    ),
    "product": EntityType(
        name="product",
        key_column="RefId",
        create_path="catalog/pvt/product",
        update_path="catalog/pvt/product/{Id}",
        dependencies=(
            _CATEGORY_REF,
            Dependency(kind=BRAND, column="BrandName", target="BrandId"),
        ),
        column_types={
            "Id": "int",
            "DepartmentId": "int",
            "CategoryId": "int",
            "BrandId": "int",
            "SupplierId": "int",
            "Score": "int",
            "IsVisible": "bool",
            "IsActive": "bool",
            "ShowWithoutStock": "bool",
        },
        self_lookup=PRODUCT,
        artifact_headers=("PartNumber", "ProductId"),
    ),
    "sku": EntityType(
        name="sku",
        key_column="RefId",
        create_path="catalog/pvt/stockkeepingunit",
        update_path="catalog/pvt/stockkeepingunit/{Id}",
        dependencies=(Dependency(kind=PRODUCT, column="ProductRefId", target="ProductId"),),
        column_types={
            "Id": "int",
            "ProductId": "int",
            "CommercialConditionId": "int",
            "PackagedHeight": "float",
            "PackagedLength": "float",
            "PackagedWidth": "float",
            "PackagedWeightKg": "float",
            "Height": "float",
            "Length": "float",
            "Width": "float",
            "WeightKg": "float",
            "CubicWeight": "float",
            "RewardValue": "float",
            "UnitMultiplier": "float",
            "IsActive": "bool",
            "IsKit": "bool",
            "KitItensSellApart": "bool",
            "ActivateIfPossible": "bool",
        },
        self_lookup=SKU,
        artifact_headers=("PartNumber", "SkuId"),
    ),
    "productspecification": EntityType(
        name="productspecification",
        key_column="ProductRefId",
        create_path="catalog/pvt/product/{ProductId}/specification",
        update_path="catalog/pvt/product/{ProductId}/specification",
        dependencies=(
            Dependency(kind=PRODUCT, column="ProductRefId", target="ProductId", in_body=False),
            _CATEGORY_REF.model_copy(update={"required": False, "in_body": False}),
            Dependency(kind=FIELD, column="FieldName", target="FieldId"),
            Dependency(kind=FIELD_VALUE, column="FieldValue", target="FieldValueId", required=False),
        ),
        column_types={"Id": "int", "FieldId": "int", "FieldValueId": "int"},
    ),
    "skuspecification": EntityType(
        name="skuspecification",
        key_column="SkuRefId",
        create_path="catalog/pvt/stockkeepingunit/{SkuId}/specification",
        update_path="catalog/pvt/stockkeepingunit/{SkuId}/specification",
        dependencies=(
            Dependency(kind=SKU, column="SkuRefId", target="SkuId", in_body=False),
            _CATEGORY_REF.model_copy(update={"required": False, "in_body": False}),
            Dependency(kind=FIELD, column="FieldName", target="FieldId"),
            Dependency(kind=FIELD_VALUE, column="FieldValue", target="FieldValueId"),
        ),
        column_types={"Id": "int", "FieldId": "int", "FieldValueId": "int"},
    ),
    "skufile": EntityType(
        name="skufile",
        key_column="SkuRefId",
        create_path="catalog/pvt/stockkeepingunit/{SkuId}/file",
        update_path="catalog/pvt/stockkeepingunit/{SkuId}/file/{Id}",
        dependencies=(Dependency(kind=SKU, column="SkuRefId", target="SkuId"),),
        column_types={"Id": "int", "ArchiveId": "int", "IsMain": "bool"},
    ),
    "skuean": EntityType(
        name="skuean",
        key_column="SkuRefId",
        create_path="catalog/pvt/stockkeepingunit/{SkuId}/ean/{EAN}",
        dependencies=(Dependency(kind=SKU, column="SkuRefId", target="SkuId", in_body=False),),
    ),
    "similarcategory": EntityType(
        name="similarcategory",
        key_column="ProductRefId",
        create_path="catalog/pvt/product/{ProductId}/similarcategory/{CategoryId}",
        dependencies=(
            Dependency(kind=PRODUCT, column="ProductRefId", target="ProductId", in_body=False),
            _CATEGORY_REF.model_copy(update={"in_body": False}),
        ),
    ),
    "price": EntityType(
        name="price",
        key_column="refId",
        create_method="PUT",
        create_path="https://api.vtex.com/{account_name}/pricing/prices/{skuId}",
        update_path="https://api.vtex.com/{account_name}/pricing/prices/{skuId}",
        dependencies=(Dependency(kind=SKU, column="refId", target="skuId", in_body=False),),
        column_types={"markup": "int", "listPrice": "float", "basePrice": "float", "costPrice": "float"},
    ),
    "inventory": EntityType(
        name="inventory",
        key_column="refId",
        create_method="PUT",
        create_path="logistics/pvt/inventory/skus/{skuId}/warehouses/{warehouseId}",
        update_path="logistics/pvt/inventory/skus/{skuId}/warehouses/{warehouseId}",
        dependencies=(Dependency(kind=SKU, column="refId", target="skuId", in_body=False),),
        column_types={"quantity": "int", "unlimitedQuantity": "bool"},
    ),
}


def get_entity_type(name: str) -> EntityType:
    """Look up an entity type by name."""
    try:
        return ENTITY_TYPES[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown entity type: {name}. Choose from: {', '.join(ENTITY_TYPES)}"
        ) from None
