"""Typed records returned by the tourism API client and the statistics aggregator."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, List, Mapping, Optional, TypeVar


# Content type IDs of the Korean service (KorService2)
CONTENT_TYPE_ID_MAP: Dict[str, str] = {
    "12": "Tourist Spot",
    "14": "Cultural Facility",
    "15": "Festival Event",
    "25": "Travel Course",
    "28": "Leisure Sports",
    "32": "Accommodation",
    "38": "Shopping",
    "39": "Restaurant",
}

# Sort options accepted by the list endpoints
ARRANGE_TITLE = "A"
ARRANGE_MODIFIED = "C"
ARRANGE_CREATED = "D"
ARRANGE_TITLE_WITH_IMAGE = "O"
ARRANGE_MODIFIED_WITH_IMAGE = "Q"
ARRANGE_CREATED_WITH_IMAGE = "R"
ARRANGE_OPTIONS = (
    ARRANGE_TITLE,
    ARRANGE_MODIFIED,
    ARRANGE_CREATED,
    ARRANGE_TITLE_WITH_IMAGE,
    ARRANGE_MODIFIED_WITH_IMAGE,
    ARRANGE_CREATED_WITH_IMAGE,
)

# Upstream field names per content type for each intro attribute.
# A missing entry means the content type has no such field.
INTRO_FIELD_MAP: Dict[str, Dict[str, str]] = {
    "12": {
        "use_time": "usetime",
        "rest_date": "restdate",
        "parking": "parking",
        "info_center": "infocenter",
        "capacity": "accomcount",
        "stroller": "chkbabycarriage",
        "pets": "chkpet",
        "guide": "expguide",
    },
    "14": {
        "use_time": "usetimeculture",
        "rest_date": "restdateculture",
        "fee": "usefee",
        "parking": "parkingculture",
        "info_center": "infocenterculture",
        "capacity": "accomcountculture",
        "stroller": "chkbabycarriageculture",
        "pets": "chkpetculture",
    },
    "15": {
        "use_time": "playtime",
        "fee": "usetimefestival",
        "info_center": "sponsor1tel",
        "guide": "program",
    },
    "25": {
        "use_time": "taketime",
        "info_center": "infocentertourcourse",
        "guide": "schedule",
    },
    "28": {
        "use_time": "usetimeleports",
        "rest_date": "restdateleports",
        "fee": "usefeeleports",
        "parking": "parkingleports",
        "info_center": "infocenterleports",
        "capacity": "accomcountleports",
        "stroller": "chkbabycarriageleports",
        "pets": "chkpetleports",
        "guide": "expguideleports",
    },
    "32": {
        "use_time": "checkintime",
        "parking": "parkinglodging",
        "info_center": "infocenterlodging",
        "capacity": "accomcountlodging",
    },
    "38": {
        "use_time": "opentime",
        "rest_date": "restdateshopping",
        "parking": "parkingshopping",
        "info_center": "infocentershopping",
        "stroller": "chkbabycarriageshopping",
        "pets": "chkpetshopping",
    },
    "39": {
        "use_time": "opentimefood",
        "rest_date": "restdatefood",
        "parking": "parkingfood",
        "info_center": "infocenterfood",
    },
}

# Coordinates are carried as integers scaled by 10^7
COORDINATE_SCALE = 10_000_000

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")
_URL_RE = re.compile(r"https?://[^\s\"'<>]+")


def _text(value: Any) -> Optional[str]:
    """Normalize an upstream scalar to a stripped string, treating blanks as absent."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coordinate(value: Any) -> Optional[int]:
    text = _text(value)
    if text is None:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    # Some services return plain decimal degrees instead of the scaled form
    if abs(number) <= 180:
        number *= COORDINATE_SCALE
    return int(round(number))


def _ordinal(value: Any) -> Optional[int]:
    text = _text(value)
    if text is None:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def strip_html(text: Optional[str]) -> str:
    """Remove markup tags and collapse whitespace."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", _TAG_RE.sub("", text)).strip()


class _Record:
    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)  # type: ignore[call-overload]
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


@dataclass(frozen=True)
class TourItem(_Record):
    """One tourist-site summary (areaBasedList2, searchKeyword2)."""

    content_id: str
    content_type_id: str
    title: str
    address: str = ""
    address_detail: Optional[str] = None
    area_code: Optional[str] = None
    map_x: Optional[int] = None
    map_y: Optional[int] = None
    first_image: Optional[str] = None
    first_image2: Optional[str] = None
    tel: Optional[str] = None
    cat1: Optional[str] = None
    cat2: Optional[str] = None
    cat3: Optional[str] = None
    modified_time: Optional[str] = None

    @classmethod
    def _common_fields(cls, item: Mapping[str, Any]) -> Dict[str, Any]:
        content_id = _text(item.get("contentid"))
        title = _text(item.get("title"))
        if content_id is None or title is None:
            raise ValueError("tour item requires contentid and title")
        return {
            "content_id": content_id,
            "content_type_id": _text(item.get("contenttypeid")) or "",
            "title": title,
            "address": _text(item.get("addr1")) or "",
            "address_detail": _text(item.get("addr2")),
            "area_code": _text(item.get("areacode")),
            "map_x": _coordinate(item.get("mapx")),
            "map_y": _coordinate(item.get("mapy")),
            "first_image": _text(item.get("firstimage")),
            "first_image2": _text(item.get("firstimage2")),
            "tel": _text(item.get("tel")),
            "cat1": _text(item.get("cat1")),
            "cat2": _text(item.get("cat2")),
            "cat3": _text(item.get("cat3")),
            "modified_time": _text(item.get("modifiedtime")),
        }

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "TourItem":
        return cls(**cls._common_fields(item))

    @property
    def content_type_name(self) -> Optional[str]:
        return CONTENT_TYPE_ID_MAP.get(self.content_type_id)

    @property
    def longitude(self) -> Optional[float]:
        return None if self.map_x is None else self.map_x / COORDINATE_SCALE

    @property
    def latitude(self) -> Optional[float]:
        return None if self.map_y is None else self.map_y / COORDINATE_SCALE

    @property
    def modified_at(self) -> Optional[datetime]:
        """Modification time, or None when the timestamp is too short to slice."""
        if not self.modified_time or len(self.modified_time) < 14:
            return None
        try:
            return datetime.strptime(self.modified_time[:14], "%Y%m%d%H%M%S")
        except ValueError:
            return None


@dataclass(frozen=True)
class TourDetail(TourItem):
    """Common detail information (detailCommon2)."""

    overview: Optional[str] = None
    homepage: Optional[str] = None
    zipcode: Optional[str] = None

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "TourDetail":
        return cls(
            **cls._common_fields(item),
            overview=_text(item.get("overview")),
            homepage=_text(item.get("homepage")),
            zipcode=_text(item.get("zipcode")),
        )

    def summary(self, max_length: int = 160) -> str:
        """Overview without markup, truncated to max_length characters."""
        text = strip_html(self.overview)
        if len(text) <= max_length:
            return text
        return text[: max_length - 3].rstrip() + "..."

    @property
    def homepage_url(self) -> Optional[str]:
        # homepage usually arrives as an <a href="..."> fragment
        if not self.homepage:
            return None
        match = _URL_RE.search(self.homepage)
        return match.group(0) if match else None


@dataclass(frozen=True)
class TourIntro(_Record):
    """Operational details (detailIntro2); field names vary by content type."""

    content_id: str
    content_type_id: str
    fields: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(
        cls, item: Mapping[str, Any], content_type_id: Optional[str] = None
    ) -> "TourIntro":
        """`content_type_id` is used when the item omits `contenttypeid`."""
        fields = {}
        for key, value in item.items():
            text = _text(value)
            if text is not None:
                fields[key] = text
        return cls(
            content_id=_text(item.get("contentid")) or "",
            content_type_id=_text(item.get("contenttypeid")) or content_type_id or "",
            fields=fields,
        )

    def get(self, key: str) -> Optional[str]:
        return self.fields.get(key)

    def attribute(self, name: str) -> Optional[str]:
        upstream = INTRO_FIELD_MAP.get(self.content_type_id, {}).get(name)
        return self.fields.get(upstream) if upstream else None

    @property
    def use_time(self) -> Optional[str]:
        return self.attribute("use_time")

    @property
    def rest_date(self) -> Optional[str]:
        return self.attribute("rest_date")

    @property
    def fee(self) -> Optional[str]:
        return self.attribute("fee")

    @property
    def parking(self) -> Optional[str]:
        return self.attribute("parking")

    @property
    def info_center(self) -> Optional[str]:
        return self.attribute("info_center")

    @property
    def capacity(self) -> Optional[str]:
        return self.attribute("capacity")

    @property
    def stroller(self) -> Optional[str]:
        return self.attribute("stroller")

    @property
    def pets(self) -> Optional[str]:
        return self.attribute("pets")

    @property
    def guide(self) -> Optional[str]:
        return self.attribute("guide")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "content_id": self.content_id,
            "content_type_id": self.content_type_id,
            "fields": dict(self.fields),
        }
        for name in INTRO_FIELD_MAP.get(self.content_type_id, {}):
            data[name] = self.attribute(name)
        return data


@dataclass(frozen=True)
class TourImage(_Record):
    content_id: str
    original_url: str
    thumbnail_url: Optional[str] = None
    caption: Optional[str] = None
    ordinal: Optional[int] = None

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "TourImage":
        return cls(
            content_id=_text(item.get("contentid")) or "",
            original_url=_text(item.get("originimgurl")) or "",
            thumbnail_url=_text(item.get("smallimageurl")),
            caption=_text(item.get("imgname")),
            ordinal=_ordinal(item.get("serialnum")),
        )

    @property
    def is_absolute(self) -> bool:
        return self.original_url.startswith(("http://", "https://"))


@dataclass(frozen=True)
class PetTourInfo(_Record):
    """Pet travel information (detailPetTour2)."""

    content_id: str
    leash: Optional[str] = None
    size: Optional[str] = None
    place: Optional[str] = None
    fee: Optional[str] = None
    info: Optional[str] = None
    parking: Optional[str] = None
    fields: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "PetTourInfo":
        fields = {k: t for k, t in ((k, _text(v)) for k, v in item.items()) if t}
        return cls(
            content_id=fields.get("contentid", ""),
            leash=fields.get("chkpetleash"),
            size=fields.get("chkpetsize"),
            place=fields.get("chkpetplace"),
            fee=fields.get("chkpetfee"),
            info=fields.get("petinfo"),
            parking=fields.get("parking"),
            fields=fields,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["fields"] = dict(self.fields)
        return data


@dataclass(frozen=True)
class PlaceDetails:
    """Everything shown on a place page; sub-parts are empty when unavailable."""

    detail: TourDetail
    intro: Optional[TourIntro] = None
    images: List[TourImage] = field(default_factory=list)
    pet_info: Optional[PetTourInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.detail.to_dict(),
            "intro": self.intro.to_dict() if self.intro else None,
            "images": [image.to_dict() for image in self.images],
            "pet_info": self.pet_info.to_dict() if self.pet_info else None,
        }


@dataclass(frozen=True)
class AreaCode(_Record):
    code: str
    name: str
    ordinal: Optional[int] = None

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "AreaCode":
        code = _text(item.get("code"))
        name = _text(item.get("name"))
        if code is None or name is None:
            raise ValueError("area code requires code and name")
        return cls(code=code, name=name, ordinal=_ordinal(item.get("rnum")))


T = TypeVar("T")


@dataclass(frozen=True)
class PagedResult(Generic[T]):
    """A page of items from a list endpoint."""

    items: List[T]
    total_count: int
    page_no: int
    num_of_rows: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_count": self.total_count,
            "page_no": self.page_no,
            "num_of_rows": self.num_of_rows,
            "items": [item.to_dict() for item in self.items],  # type: ignore[attr-defined]
        }


@dataclass(frozen=True)
class RegionStat(_Record):
    area_code: str
    area_name: str
    count: int


@dataclass(frozen=True)
class TypeStat(_Record):
    content_type_id: str
    type_name: str
    count: int


@dataclass(frozen=True)
class StatsSummary(_Record):
    total_count: int
    top_regions: List[RegionStat]
    top_types: List[TypeStat]
    generated_at: datetime
