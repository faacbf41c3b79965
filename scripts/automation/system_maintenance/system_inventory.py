#!/usr/bin/env python3
"""
Hardware / OS inventory: the PowerShell CIM query, the schema of its JSON output,
and the text summary shown after the task completes.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

INVENTORY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$os = Get-CimInstance -ClassName Win32_OperatingSystem
$cpu = Get-CimInstance -ClassName Win32_Processor | Select-Object -First 1
$gpus = @(Get-CimInstance -ClassName Win32_VideoController)
$cs = Get-CimInstance -ClassName Win32_ComputerSystem
$board = Get-CimInstance -ClassName Win32_BaseBoard | Select-Object -First 1
$inventory = [ordered]@{
    os = [ordered]@{ caption = $os.Caption; version = $os.Version; build = $os.BuildNumber }
    cpu = [ordered]@{
        name = $cpu.Name
        manufacturer = $cpu.Manufacturer
        max_clock_mhz = $cpu.MaxClockSpeed
        cores = $cpu.NumberOfCores
        logical_processors = $cpu.NumberOfLogicalProcessors
    }
    gpu = $null
    memory = [ordered]@{ total_bytes = $cs.TotalPhysicalMemory }
    motherboard = $null
}
if ($gpus.Count -gt 0) {
    $inventory.gpu = @($gpus | ForEach-Object { [ordered]@{ name = $_.Name; adapter_ram = $_.AdapterRAM } })
}
if ($board) {
    $inventory.motherboard = [ordered]@{ manufacturer = $board.Manufacturer; product = $board.Product }
}
$inventory | ConvertTo-Json -Depth 4 -Compress
"""


class InventoryParseError(ValueError):
    """The inventory script returned output that does not match the expected schema."""


def format_bytes(n) -> str:
    """Format bytes to human-readable string."""
    n = float(n)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(n) < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} PB"


def _section(data: Dict[str, Any], name: str, required: bool) -> Optional[Dict[str, Any]]:
    value = data.get(name)
    if value is None:
        if required:
            raise InventoryParseError(f"Inventory output is missing the '{name}' section")
        return None
    if not isinstance(value, dict):
        raise InventoryParseError(f"Inventory section '{name}' is not an object")
    return value


def _require(section: Dict[str, Any], section_name: str, key: str):
    value = section.get(key)
    if value in (None, ''):
        raise InventoryParseError(f"Inventory field '{section_name}.{key}' is missing")
    return value


def _optional_int(section: Dict[str, Any], section_name: str, key: str) -> Optional[int]:
    value = section.get(key)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InventoryParseError(f"Inventory field '{section_name}.{key}' is not a number: {value!r}")


def _optional_str(section: Dict[str, Any], key: str) -> Optional[str]:
    value = section.get(key)
    if value in (None, ''):
        return None
    return str(value).strip()


@dataclass
class OperatingSystemInfo:
    caption: str
    version: Optional[str] = None
    build: Optional[str] = None


@dataclass
class ProcessorInfo:
    name: str
    manufacturer: Optional[str] = None
    max_clock_mhz: Optional[int] = None
    cores: Optional[int] = None
    logical_processors: Optional[int] = None


@dataclass
class GraphicsInfo:
    name: str
    adapter_ram: Optional[int] = None


@dataclass
class MotherboardInfo:
    manufacturer: Optional[str] = None
    product: Optional[str] = None


@dataclass
class SystemInventory:
    operating_system: OperatingSystemInfo
    processor: ProcessorInfo
    total_memory_bytes: int
    graphics: List[GraphicsInfo] = field(default_factory=list)
    motherboard: Optional[MotherboardInfo] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SystemInventory':
        if not isinstance(data, dict):
            raise InventoryParseError("Inventory output is not a JSON object")

        os_data = _section(data, 'os', required=True)
        cpu_data = _section(data, 'cpu', required=True)
        memory_data = _section(data, 'memory', required=True)
        board_data = _section(data, 'motherboard', required=False)

        gpu_data = data.get('gpu')
        if isinstance(gpu_data, dict):
            gpu_data = [gpu_data]
        elif gpu_data is None:
            gpu_data = []
        elif not isinstance(gpu_data, list):
            raise InventoryParseError("Inventory section 'gpu' is not an object or list")

        graphics = []
        for gpu in gpu_data:
            if not isinstance(gpu, dict) or not gpu.get('name'):
                continue
            graphics.append(GraphicsInfo(
                name=str(gpu['name']).strip(),
                adapter_ram=_optional_int(gpu, 'gpu', 'adapter_ram')
            ))

        total_memory = _optional_int(memory_data, 'memory', 'total_bytes')
        if total_memory is None:
            raise InventoryParseError("Inventory field 'memory.total_bytes' is missing")

        motherboard = None
        if board_data is not None:
            motherboard = MotherboardInfo(
                manufacturer=_optional_str(board_data, 'manufacturer'),
                product=_optional_str(board_data, 'product')
            )
            if not motherboard.manufacturer and not motherboard.product:
                motherboard = None

        return cls(
            operating_system=OperatingSystemInfo(
                caption=str(_require(os_data, 'os', 'caption')).strip(),
                version=_optional_str(os_data, 'version'),
                build=_optional_str(os_data, 'build')
            ),
            processor=ProcessorInfo(
                name=str(_require(cpu_data, 'cpu', 'name')).strip(),
                manufacturer=_optional_str(cpu_data, 'manufacturer'),
                max_clock_mhz=_optional_int(cpu_data, 'cpu', 'max_clock_mhz'),
                cores=_optional_int(cpu_data, 'cpu', 'cores'),
                logical_processors=_optional_int(cpu_data, 'cpu', 'logical_processors')
            ),
            total_memory_bytes=total_memory,
            graphics=graphics,
            motherboard=motherboard
        )


def parse_inventory(raw: str) -> SystemInventory:
    """Parse the JSON blob printed by INVENTORY_SCRIPT."""
    if not raw or not raw.strip():
        raise InventoryParseError("Inventory script returned no output")
    try:
        data = json.loads(raw.strip())
    except json.JSONDecodeError as e:
        raise InventoryParseError(f"Inventory output is not valid JSON: {e}") from e
    return SystemInventory.from_dict(data)


def render_inventory(inventory: SystemInventory) -> str:
    """Multi-line summary; sections and fields that were not reported are left out."""
    lines = []

    os_info = inventory.operating_system
    lines.append("Operating System")
    lines.append(f"  Name: {os_info.caption}")
    if os_info.version:
        lines.append(f"  Version: {os_info.version}")
    if os_info.build:
        lines.append(f"  Build: {os_info.build}")

    cpu = inventory.processor
    lines.append("Processor")
    lines.append(f"  Name: {cpu.name}")
    if cpu.manufacturer:
        lines.append(f"  Manufacturer: {cpu.manufacturer}")
    if cpu.max_clock_mhz:
        lines.append(f"  Max clock: {cpu.max_clock_mhz} MHz")
    if cpu.cores is not None:
        lines.append(f"  Cores: {cpu.cores}")
    if cpu.logical_processors is not None:
        lines.append(f"  Logical processors: {cpu.logical_processors}")

    if inventory.graphics:
        lines.append("Graphics")
        for gpu in inventory.graphics:
            if gpu.adapter_ram:
                lines.append(f"  {gpu.name} ({format_bytes(gpu.adapter_ram)})")
            else:
                lines.append(f"  {gpu.name}")

    lines.append("Memory")
    lines.append(f"  Total: {format_bytes(inventory.total_memory_bytes)}")

    board = inventory.motherboard
    if board:
        lines.append("Motherboard")
        if board.manufacturer:
            lines.append(f"  Manufacturer: {board.manufacturer}")
        if board.product:
            lines.append(f"  Model: {board.product}")

    return '\n'.join(lines)
