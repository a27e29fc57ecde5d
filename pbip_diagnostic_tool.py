"""
PBIP Lineage Diagnostic Tool

This script helps you:
1. Find PBIP files on your system
2. Check a project's health (object counts, skipped files, orphaned references, cycles)
3. Preview the delete risk of an object and export its impact to CSV
"""
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional, Dict, Any

from dotenv import load_dotenv

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from pbip_graph_analyzer import format_delete_analysis
from pbip_lineage_service import LineageSettings, PBIPLineageService

load_dotenv()


def find_pbip_files(start_path: Optional[str] = None) -> List[Path]:
    """Find all .pbip files in common document folders or in a specific directory"""
    if not start_path:
        common_paths = [
            Path.home() / "Documents",
            Path.home() / "OneDrive" / "Documents",
            Path("C:\\Users\\Public\\Documents"),
        ]
        pbip_files = []
        for path in common_paths:
            if path.exists():
                pbip_files.extend(list(path.rglob("*.pbip")))
        return pbip_files

    start = Path(start_path)
    if start.exists():
        return list(start.rglob("*.pbip"))
    return []


def create_service() -> PBIPLineageService:
    """Read-only service without audit logging"""
    settings = LineageSettings.from_env()
    settings.read_only = True
    settings.enable_audit = False
    return PBIPLineageService(settings)


def analyze_project(service: PBIPLineageService, pbip_path: str) -> Dict[str, Any]:
    """Load a project and collect its health report"""
    try:
        asyncio.run(service.load_project(pbip_path))
        stats = service.statistics()
        stats["cycles"] = service.detect_cycles()
        return stats
    except Exception as e:
        return {"error": str(e), "project": pbip_path}


def print_pbip_list(pbip_files: List[Path]):
    """Print formatted list of PBIP files found"""
    if not pbip_files:
        print("  No .pbip files found")
        return

    print(f"\nFound {len(pbip_files)} PBIP file(s):\n")
    for i, pbip in enumerate(pbip_files, 1):
        print(f"  {i}. {pbip}")


def print_analysis(analysis: Dict[str, Any]):
    """Print formatted health report"""
    if "error" in analysis:
        print(f"  ERROR: {analysis['error']}")
        return

    print(f"\n  Semantic model: {analysis['semantic_model']}")
    print(f"  Report: {analysis['report'] or 'None'}")
    print()
    print(f"  Objects:")
    for kind, count in analysis['counts_by_kind'].items():
        print(f"    - {kind}: {count}")
    print(f"    - relationships: {analysis['relationship_count']}")
    print(f"    - dependencies: {analysis['edge_count']}")

    print(f"\n  Orphaned references: {analysis['orphaned_count']}")
    for orphan in analysis['orphaned_references'][:10]:
        print(f"    - {orphan['source_id']} -> {orphan['referenced_name']}")
    if analysis['orphaned_count'] > 10:
        print(f"    ... and {analysis['orphaned_count'] - 10} more")

    cycles = analysis['cycles']
    print(f"\n  Circular dependencies: {len(cycles)}")
    for cycle in cycles[:5]:
        print(f"    - {' -> '.join(cycle)}")

    if analysis['skipped']:
        print(f"\n  Skipped files ({analysis['skipped_count']}):")
        for skip in analysis['skipped']:
            print(f"    - [{skip['kind']}] {skip['source']}: {skip['reason']}")


def print_object_report(service: PBIPLineageService, node_id: str, csv_path: Optional[str]):
    """Delete risk for one object, optionally exported as an impact CSV"""
    try:
        node_id = service.find_node_id(None, node_id)
        print(format_delete_analysis(service.analyze_delete(node_id)))
        if csv_path:
            count = service.export_csv(node_id, "impact", csv_path)
            print(f"  Exported {count} impact row(s) to {csv_path}")
    except Exception as e:
        print(f"  ERROR: {e}")


def main():
    print("\n" + "="*70)
    print("  PBIP LINEAGE DIAGNOSTIC TOOL")
    print("="*70)

    if len(sys.argv) > 1:
        pbip_path = sys.argv[1]
        print(f"\nAnalyzing PBIP: {pbip_path}")
        print("="*70)

        service = create_service()
        analysis = analyze_project(service, pbip_path)
        print_analysis(analysis)

        if len(sys.argv) > 2 and "error" not in analysis:
            print("\n" + "-"*70)
            print_object_report(service, sys.argv[2], sys.argv[3] if len(sys.argv) > 3 else None)

        return 1 if "error" in analysis else 0

    print("\nSearching for PBIP files...")
    print("-"*70)

    pbip_files = find_pbip_files()
    print_pbip_list(pbip_files)

    print("\n" + "="*70)
    print("\nUsage:")
    print("-"*70)
    print("1. Health check of a project:")
    print("   python pbip_diagnostic_tool.py \"C:/path/to/Project.pbip\"")
    print()
    print("2. Delete risk of one object (node id), with optional impact CSV:")
    print("   python pbip_diagnostic_tool.py \"C:/path/to/Project.pbip\" \"Measure.Total Sales\" impact.csv")
    print()

    return 0


if __name__ == "__main__":
    sys.exit(main())
