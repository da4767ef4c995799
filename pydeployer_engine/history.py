import json
import os
from pathlib import Path
from typing import List, Optional

from .logger_setup import logger
from .models import Build

BUILDS_METADATA_DIR_NAME = "builds"
BUILD_INFO_FILE_NAME = "build_info.json"


class BuildHistory:
    """Persists build records as data/builds/<id>/build_info.json."""

    def __init__(self, data_dir: Path):
        self.builds_root_dir = Path(data_dir) / BUILDS_METADATA_DIR_NAME
        self.builds_root_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger

    def _meta_file(self, build_id: str) -> Path:
        return self.builds_root_dir / build_id / BUILD_INFO_FILE_NAME

    def save(self, build: Build):
        build_meta_file = self._meta_file(build.id)
        try:
            build_meta_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = build_meta_file.with_suffix(".json.tmp")
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(build.to_dict(), f, indent=2)
            os.replace(tmp_file, build_meta_file)
        except (OSError, IOError) as e:
            self.logger.error(f"File I/O error saving build {build.id} to {build_meta_file}: {e}", exc_info=True)
        except TypeError as e:
            self.logger.error(f"Type error serializing build {build.id}: {e}", exc_info=True)

    def get(self, build_id: str) -> Optional[Build]:
        build_meta_file = self._meta_file(build_id)
        if not build_meta_file.exists():
            return None
        try:
            with open(build_meta_file, "r", encoding="utf-8") as f:
                return Build.from_dict(json.load(f))
        except json.JSONDecodeError:
            self.logger.error(f"Error decoding build record JSON for {build_id}")
        except (OSError, KeyError, ValueError) as e:
            self.logger.error(f"Error loading build record {build_id}: {e}")
        return None

    def list(self, limit: int = 20) -> List[dict]:
        build_info_files = [p / BUILD_INFO_FILE_NAME for p in self.builds_root_dir.iterdir()
                            if (p / BUILD_INFO_FILE_NAME).exists()]
        build_info_files.sort(key=lambda f: os.path.getmtime(f), reverse=True)

        builds_data = []
        for bf in build_info_files[:limit]:
            try:
                with open(bf, "r", encoding="utf-8") as f:
                    builds_data.append(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                self.logger.error(f"Error reading build file {bf}: {e}")
        return builds_data
