import io
import base64
from PIL import Image
from typing import Union

SUPPORTED_FORMATS = {'JPEG', 'PNG', 'JPG', 'WEBP', 'BMP', 'GIF'}


def load_image(source: Union[str, bytes]) -> Image.Image:
    try:
        if isinstance(source, str):
            if not source.startswith('data:image') or ',' not in source:
                raise ValueError("Not an image data URL")
            image_bytes = base64.b64decode(source.split(',', 1)[1])
        else:
            image_bytes = bytes(source)

        image = Image.open(io.BytesIO(image_bytes))

        if image.format not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported image format: {image.format}")

        if image.mode == 'RGBA':
            rgb_image = Image.new('RGB', image.size, (255, 255, 255))
            rgb_image.paste(image, mask=image.split()[3])
            rgb_image.format = image.format
            return rgb_image
        elif image.mode != 'RGB':
            image = image.convert('RGB')

        return image

    except Exception as e:
        raise ValueError(f"Failed to load image: {str(e)}")


def image_to_base64(image: Image.Image, format: str = "JPEG", quality: int = 85) -> str:
    buffered = io.BytesIO()
    image.save(buffered, format=format, quality=quality)
    img_str = base64.b64encode(buffered.getvalue()).decode()
    return f"data:image/{format.lower()};base64,{img_str}"


def strip_data_url(data_url: str) -> str:
    """Return the bare base64 payload model APIs expect."""
    if data_url.startswith('data:') and ',' in data_url:
        return data_url.split(',', 1)[1]
    return data_url
