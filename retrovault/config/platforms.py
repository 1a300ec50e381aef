"""Platform table parsing and lookup."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from lxml import etree

from retrovault.errors import FatalPipelineError

logger = logging.getLogger(__name__)


@dataclass
class PlatformDefinition:
    """Represents one platform the pipeline can ingest."""
    id: str
    name: str
    extensions: List[str]
    db_name: Optional[str] = None          # Playlist/thumbnail database name
    bios_files: List[str] = field(default_factory=list)
    companion_files: Dict[str, List[str]] = field(default_factory=dict)  # ROM ext -> required companion exts
    header: Optional[bytes] = None         # Magic bytes every ROM must start with
    min_size: int = 1
    naming_pattern: Optional[str] = None   # Regex the filename must match
    chd: bool = False                      # Eligible for CHD conversion

    def __post_init__(self):
        if self.db_name is None:
            self.db_name = self.name

    @property
    def requires_bios(self) -> bool:
        """Check if platform lists any required BIOS files."""
        return bool(self.bios_files)

    def matches_extension(self, extension: str) -> bool:
        """Check if extension (with leading dot, any case) belongs to this platform."""
        return extension.lower() in self.extensions


class PlatformConfigError(FatalPipelineError):
    """Platform table parsing errors."""
    pass


DEFAULT_PLATFORMS: List[PlatformDefinition] = [
    PlatformDefinition(
        id='nes',
        name='Nintendo Entertainment System',
        extensions=['.nes'],
        db_name='Nintendo - Nintendo Entertainment System',
        header=b'NES\x1a',
        min_size=16,
    ),
    PlatformDefinition(
        id='snes',
        name='Super Nintendo Entertainment System',
        extensions=['.sfc', '.smc'],
        db_name='Nintendo - Super Nintendo Entertainment System',
    ),
    PlatformDefinition(
        id='genesis',
        name='Sega Genesis / Mega Drive',
        extensions=['.md', '.gen', '.bin'],
        db_name='Sega - Mega Drive - Genesis',
    ),
    PlatformDefinition(
        id='psx',
        name='Sony PlayStation',
        extensions=['.cue', '.bin', '.chd'],
        db_name='Sony - PlayStation',
        bios_files=['scph5500.bin', 'scph5501.bin', 'scph5502.bin'],
        companion_files={'.bin': ['.cue']},
        chd=True,
    ),
    PlatformDefinition(
        id='n64',
        name='Nintendo 64',
        extensions=['.n64', '.z64', '.v64'],
        db_name='Nintendo - Nintendo 64',
    ),
    PlatformDefinition(
        id='gba',
        name='Game Boy Advance',
        extensions=['.gba'],
        db_name='Nintendo - Game Boy Advance',
    ),
]


class PlatformTable:
    """
    Ordered collection of platform definitions.

    Lookup by extension returns platforms in table order, so the first
    definition listing a shared extension (e.g. '.bin') wins classification.
    """

    def __init__(self, platforms: List[PlatformDefinition]):
        """
        Initialize platform table.

        Args:
            platforms: Platform definitions in priority order

        Raises:
            PlatformConfigError: If the table is empty or ids repeat
        """
        if not platforms:
            raise PlatformConfigError("Platform table is empty")

        self._platforms: Dict[str, PlatformDefinition] = {}
        for platform in platforms:
            if platform.id in self._platforms:
                raise PlatformConfigError(f"Duplicate platform id: {platform.id}")
            self._platforms[platform.id] = platform

    def __iter__(self):
        return iter(self._platforms.values())

    def __len__(self) -> int:
        return len(self._platforms)

    def get(self, platform_id: Optional[str]) -> Optional[PlatformDefinition]:
        """Get platform by id, or None."""
        if not platform_id:
            return None
        return self._platforms.get(platform_id)

    def find_by_extension(self, extension: str) -> List[PlatformDefinition]:
        """
        Find every platform accepting an extension.

        Args:
            extension: Extension with leading dot (case-insensitive)

        Returns:
            Matching platforms in table order
        """
        return [p for p in self._platforms.values() if p.matches_extension(extension)]

    def all_extensions(self) -> List[str]:
        """Sorted union of every platform extension."""
        return sorted({ext for p in self._platforms.values() for ext in p.extensions})


def load_platform_table(xml_path: Optional[Path] = None) -> PlatformTable:
    """
    Load the platform table.

    Args:
        xml_path: Optional platforms.xml file; built-in defaults when None

    Returns:
        PlatformTable

    Raises:
        PlatformConfigError: If the XML file is missing or malformed
    """
    if xml_path is None:
        return PlatformTable(list(DEFAULT_PLATFORMS))
    return PlatformTable(parse_platforms_xml(Path(xml_path)))


def parse_platforms_xml(xml_path: Path) -> List[PlatformDefinition]:
    """
    Parse a platforms.xml file.

    Args:
        xml_path: Path to platforms.xml file

    Returns:
        List of PlatformDefinition objects

    Raises:
        PlatformConfigError: If XML cannot be parsed or is invalid
    """
    try:
        tree = etree.parse(str(xml_path))
        root = tree.getroot()
    except etree.XMLSyntaxError as e:
        raise PlatformConfigError(f"Invalid XML in platforms file: {e}")
    except OSError as e:
        raise PlatformConfigError(f"Failed to read platforms file: {e}")

    if root.tag != 'platformList':
        raise PlatformConfigError(
            f"Invalid root element: expected 'platformList', got '{root.tag}'"
        )

    platforms = []

    for platform_elem in root.findall('platform'):
        try:
            platforms.append(_parse_platform_element(platform_elem))
        except ValueError as e:
            # A half-valid table would silently misclassify ROMs
            raise PlatformConfigError(f"Invalid platform definition: {e}")

    if not platforms:
        raise PlatformConfigError("No platforms found in platforms file")

    logger.debug(f"Loaded {len(platforms)} platform(s) from {xml_path}")
    return platforms


def _parse_platform_element(elem: etree.Element) -> PlatformDefinition:
    """
    Parse a single <platform> element.

    Args:
        elem: <platform> XML element

    Returns:
        PlatformDefinition object

    Raises:
        ValueError: If required fields are missing or malformed
    """
    platform_id = _get_element_text(elem, 'id')
    name = _get_element_text(elem, 'name')
    extension_str = _get_element_text(elem, 'extensions')

    if not all([platform_id, name, extension_str]):
        raise ValueError(
            f"platform missing required fields (id: {platform_id}, name: {name})"
        )

    extensions = _split_extensions(extension_str)
    if not extensions:
        raise ValueError(f"platform {platform_id} has no extensions")

    header = None
    header_hex = _get_element_text(elem, 'header')
    if header_hex:
        try:
            header = bytes.fromhex(header_hex)
        except ValueError:
            raise ValueError(f"platform {platform_id} header is not hex: {header_hex}")

    min_size = 1
    min_size_str = _get_element_text(elem, 'minSize')
    if min_size_str:
        if not min_size_str.isdigit():
            raise ValueError(f"platform {platform_id} minSize must be an integer")
        min_size = int(min_size_str)

    naming_pattern = _get_element_text(elem, 'namingPattern')
    if naming_pattern:
        try:
            re.compile(naming_pattern)
        except re.error as e:
            raise ValueError(f"platform {platform_id} namingPattern is invalid: {e}")

    bios_str = _get_element_text(elem, 'bios') or ''
    companions_str = _get_element_text(elem, 'companions') or ''
    chd_str = (_get_element_text(elem, 'chd') or 'false').lower()

    return PlatformDefinition(
        id=platform_id,
        name=name,
        extensions=extensions,
        db_name=_get_element_text(elem, 'dbName'),
        bios_files=bios_str.split(),
        companion_files=_parse_companions(companions_str, platform_id),
        header=header,
        min_size=min_size,
        naming_pattern=naming_pattern,
        chd=chd_str in ('true', 'yes', '1'),
    )


def _split_extensions(value: str) -> List[str]:
    """Split a space-separated extension list, normalizing case and leading dot."""
    extensions = []
    for ext in value.split():
        ext = ext.strip().lower()
        if not ext:
            continue
        if not ext.startswith('.'):
            ext = '.' + ext
        extensions.append(ext)
    return extensions


def _get_element_text(parent: etree.Element, tag: str) -> Optional[str]:
    """Get text content of child element."""
    elem = parent.find(tag)
    if elem is not None and elem.text:
        text = elem.text.strip()
        if text:
            return text
    return None


def _parse_companions(value: str, platform_id: str) -> Dict[str, List[str]]:
    """
    Parse companion requirements of the form '.bin:.cue .img:.ccd,.sub'.

    Raises:
        ValueError: If an item is not '<ext>:<ext>[,<ext>...]'
    """
    companions: Dict[str, List[str]] = {}
    for item in value.split():
        rom_ext, sep, required = item.partition(':')
        if not sep or not rom_ext or not required:
            raise ValueError(
                f"platform {platform_id} companions must look like '.bin:.cue', got '{item}'"
            )
        key = _split_extensions(rom_ext)[0]
        companions.setdefault(key, []).extend(_split_extensions(required.replace(',', ' ')))
    return companions
