from __future__ import annotations

"""Genera la imagen anotada de una estación."""

import io
import logging
from pathlib import Path

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from app.core.exceptions import RenderError


class RenderService:
    """
    Pinta el nombre de la estación y su temperatura sobre un fondo
    (una imagen dada o, si no hay, un lienzo azul) y devuelve un JPEG.
    """

    def __init__(
        self,
        font_path: Path | str = "DejaVuSans.ttf",
        font_size: int = 36,
        width: int = 800,
        height: int = 600,
        background_color: str = "steelblue",
        text_color: str = "white",
        text_origin: tuple[int, int] = (20, 20),
        jpeg_quality: int = 85,
    ) -> None:
        self.font_path = Path(font_path)
        self.font_size = font_size
        self.width = width
        self.height = height
        self.background_color = background_color
        self.text_color = text_color
        self.text_origin = text_origin
        self.jpeg_quality = jpeg_quality
        self.logger = logging.getLogger(__name__)

    def render(
        self,
        station_name: str,
        temperature: float | None,
        background: bytes | None = None,
    ) -> bytes:
        """
        Devuelve los bytes JPEG de la imagen de `station_name`.
        Cualquier fallo de Pillow se convierte en RenderError.
        """
        try:
            img = self._load_background(background)
            draw = ImageDraw.Draw(img)
            font = self._get_base_font(self.font_size)

            caption = self.caption_for(station_name, temperature)
            # Sombra de 2px para que el texto se lea sobre fondos claros
            x, y = self.text_origin
            draw.text((x + 2, y + 2), caption, font=font, fill="black")
            draw.text((x, y), caption, font=font, fill=self.text_color)

            buffer = io.BytesIO()
            img.save(buffer, format="JPEG", quality=self.jpeg_quality)
            return buffer.getvalue()
        except (OSError, ValueError) as e:
            raise RenderError(f"Could not render image for {station_name}: {e}") from e

    @staticmethod
    def caption_for(station_name: str, temperature: float | None) -> str:
        if temperature is None:
            return f"{station_name}: n/a"
        return f"{station_name}: {temperature:.1f}°C"

    # ---------- Helpers internos ----------

    def _load_background(self, background: bytes | None) -> Image.Image:
        if background:
            try:
                return Image.open(io.BytesIO(background)).convert("RGB")
            except UnidentifiedImageError:
                self.logger.warning("Background image unreadable, using plain canvas")
        return Image.new("RGB", (self.width, self.height), color=self.background_color)

    def _get_base_font(self, size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
        """
        Devuelve una fuente. Intentamos usar una TrueType decente; si no,
        usamos la fuente por defecto de Pillow.
        """
        try:
            return ImageFont.truetype(str(self.font_path), size)
        except OSError:
            return ImageFont.load_default()
