"""
Digester selection per image type.

Native image types go to the in-process engine digester; anything else
is routed to the external driver that advertises the type.
"""

from .bundle import Image
from .config import Config
from .digester import Digester
from .driver import DriverDigester, DriverRegistry, discover_drivers
from .engine import DockerEngine, EngineDigester, ImageContentSource
from .errors import UnsupportedImageTypeError


class DigesterRouter:

    def __init__(
        self,
        native: Digester | None,
        native_types: tuple[str, ...] = (),
        drivers: DriverRegistry | None = None,
    ):
        self.native = native
        self.native_types = tuple(native_types)
        self.drivers = drivers
        self._driver_digesters: dict[str, DriverDigester] = {}

    @classmethod
    def from_config(cls, config: Config, engine: ImageContentSource | None = None) -> "DigesterRouter":
        engine = engine or DockerEngine(config.docker_binary)
        return cls(
            native=EngineDigester(engine, config.digest_algorithm),
            native_types=config.native_image_types,
            drivers=discover_drivers(config.driver_path, config.driver_prefix, config.driver_timeout),
        )

    def for_image(self, image: Image) -> Digester:
        """
        Raises:
            UnsupportedImageTypeError: If neither the engine nor a driver handles the type
        """
        image_type = image.image_type
        if self.native is not None and image_type in self.native_types:
            return self.native
        if self.drivers is None:
            raise UnsupportedImageTypeError(
                f"unsupported image type {image_type!r}",
                {"image_type": image_type, "image": image.image},
            )
        if image_type not in self._driver_digesters:
            algorithm = self.native.algorithm if self.native is not None else DriverDigester.algorithm
            self._driver_digesters[image_type] = DriverDigester(
                self.drivers.route(image_type), image_type, algorithm
            )
        return self._driver_digesters[image_type]
