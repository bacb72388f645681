# pyright: reportUndefinedVariable=false
# pyright: reportGeneralTypeIssues=false

from __future__ import annotations

"""Matrix textures and the shared output target.

Each texture holds one encoded scalar per texel, row 0 of the matrix in
texel row 0. The output side is a single long-lived render pass (the
framebuffer object every kernel renders through); each dispatch attaches a
freshly sized colour image to it and detaches it again afterwards.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TYPE_CHECKING

import itertools

from .errors import FramebufferIncomplete, InvalidDimensions
from .matrix import Matrix, MatrixLike, as_array, check_dims, to_rows

try:
    from vulkan import *  # type: ignore

    _HAS_VULKAN = True
except Exception:
    _HAS_VULKAN = False

if TYPE_CHECKING:  # pragma: no cover
    from vulkan import *  # type: ignore
    from .context import GPUContext


_ids = itertools.count(1)


@dataclass
class Texture:
    width: int
    height: int
    vk_format: int
    image: Any
    memory: Any
    view: Any
    layout: int = 0  # VK_IMAGE_LAYOUT_UNDEFINED
    id: int = field(default_factory=lambda: next(_ids))
    released: bool = False


@dataclass
class OutputTarget:
    """The shared render pass with one colour attachment bound for this call."""

    texture: Texture
    framebuffer: Any
    render_pass: Any

    @property
    def width(self) -> int:
        return self.texture.width

    @property
    def height(self) -> int:
        return self.texture.height


class TextureStore:
    def __init__(self, ctx: "GPUContext") -> None:
        self.ctx = ctx
        self._render_pass: Optional[VkRenderPass] = None
        self._live: Dict[int, Texture] = {}

    @property
    def live_count(self) -> int:
        return len(self._live)

    # ------------------------------
    # Render pass (shared framebuffer object)
    # ------------------------------
    @property
    def render_pass(self) -> VkRenderPass:
        if self._render_pass is None:
            self._render_pass = self._create_render_pass()
        return self._render_pass

    def _create_render_pass(self) -> VkRenderPass:
        ctx = self.ctx
        assert ctx.device is not None

        attachment = VkAttachmentDescription(
            format=ctx.codec.vk_format,
            samples=VK_SAMPLE_COUNT_1_BIT,
            loadOp=VK_ATTACHMENT_LOAD_OP_CLEAR,
            storeOp=VK_ATTACHMENT_STORE_OP_STORE,
            stencilLoadOp=VK_ATTACHMENT_LOAD_OP_DONT_CARE,
            stencilStoreOp=VK_ATTACHMENT_STORE_OP_DONT_CARE,
            initialLayout=VK_IMAGE_LAYOUT_UNDEFINED,
            finalLayout=VK_IMAGE_LAYOUT_TRANSFER_SRC_OPTIMAL,
        )
        color_ref = VkAttachmentReference(
            attachment=0,
            layout=VK_IMAGE_LAYOUT_COLOR_ATTACHMENT_OPTIMAL,
        )
        subpass = VkSubpassDescription(
            pipelineBindPoint=VK_PIPELINE_BIND_POINT_GRAPHICS,
            colorAttachmentCount=1,
            pColorAttachments=[color_ref],
        )
        # Make the rendered texels visible to the readback copy.
        dependency = VkSubpassDependency(
            srcSubpass=0,
            dstSubpass=VK_SUBPASS_EXTERNAL,
            srcStageMask=VK_PIPELINE_STAGE_COLOR_ATTACHMENT_OUTPUT_BIT,
            dstStageMask=VK_PIPELINE_STAGE_TRANSFER_BIT,
            srcAccessMask=VK_ACCESS_COLOR_ATTACHMENT_WRITE_BIT,
            dstAccessMask=VK_ACCESS_TRANSFER_READ_BIT,
            dependencyFlags=0,
        )
        rpci = VkRenderPassCreateInfo(
            sType=VK_STRUCTURE_TYPE_RENDER_PASS_CREATE_INFO,
            attachmentCount=1,
            pAttachments=[attachment],
            subpassCount=1,
            pSubpasses=[subpass],
            dependencyCount=1,
            pDependencies=[dependency],
        )
        return vkCreateRenderPass(ctx.device, rpci, None)

    # ------------------------------
    # Textures
    # ------------------------------
    def _check_size(self, width: int, height: int) -> None:
        check_dims(width, height)
        limit = self.ctx.max_image_dimension
        if limit and (width > limit or height > limit):
            raise InvalidDimensions(
                f"{width}x{height} texture exceeds the device limit of {limit} texels per side"
            )

    def _new_texture(self, width: int, height: int, usage: int) -> Texture:
        image, memory, view = self.ctx.alloc_image(width, height, usage)
        tex = Texture(
            width=width,
            height=height,
            vk_format=self.ctx.codec.vk_format,
            image=image,
            memory=memory,
            view=view,
            layout=VK_IMAGE_LAYOUT_UNDEFINED,
        )
        self._live[tex.id] = tex
        return tex

    def matrix_to_texture(self, matrix: MatrixLike, width: int, height: int) -> Texture:
        """Encode a height x width matrix into a sampled texture."""

        arr = as_array(matrix, height, width)
        self._check_size(width, height)

        ctx = self.ctx
        data = ctx.codec.encode_matrix(arr)
        staging, staging_mem = ctx.alloc_buffer(len(data), VK_BUFFER_USAGE_TRANSFER_SRC_BIT)
        try:
            ctx.write_buffer(staging_mem, data)
            tex = self._new_texture(
                width,
                height,
                VK_IMAGE_USAGE_SAMPLED_BIT
                | VK_IMAGE_USAGE_TRANSFER_DST_BIT
                | VK_IMAGE_USAGE_TRANSFER_SRC_BIT,
            )
            try:
                with ctx.one_shot() as cmd:
                    _transition(
                        cmd,
                        tex,
                        VK_IMAGE_LAYOUT_TRANSFER_DST_OPTIMAL,
                        0,
                        VK_ACCESS_TRANSFER_WRITE_BIT,
                        VK_PIPELINE_STAGE_TOP_OF_PIPE_BIT,
                        VK_PIPELINE_STAGE_TRANSFER_BIT,
                    )
                    vkCmdCopyBufferToImage(
                        cmd,
                        staging,
                        tex.image,
                        VK_IMAGE_LAYOUT_TRANSFER_DST_OPTIMAL,
                        1,
                        [_copy_region(width, height)],
                    )
                    _transition(
                        cmd,
                        tex,
                        VK_IMAGE_LAYOUT_SHADER_READ_ONLY_OPTIMAL,
                        VK_ACCESS_TRANSFER_WRITE_BIT,
                        VK_ACCESS_SHADER_READ_BIT,
                        VK_PIPELINE_STAGE_TRANSFER_BIT,
                        VK_PIPELINE_STAGE_FRAGMENT_SHADER_BIT,
                    )
            except BaseException:
                if ctx.alive:
                    self.release_texture(tex)
                raise
        finally:
            # A lost context may still be reading the staging buffer.
            if ctx.alive:
                ctx.free_buffer(staging, staging_mem)
        return tex

    def texture_to_matrix(self, texture: Texture, width: int, height: int) -> Matrix:
        """Read a texture back and decode it into a height x width matrix."""

        check_dims(width, height)
        if texture.released:
            raise ValueError("texture has been released")
        if width > texture.width or height > texture.height:
            raise InvalidDimensions(
                f"cannot read {width}x{height} from a {texture.width}x{texture.height} texture"
            )

        ctx = self.ctx
        nbytes = texture.width * texture.height * ctx.codec.texel_bytes
        buf, mem = ctx.alloc_buffer(nbytes, VK_BUFFER_USAGE_TRANSFER_DST_BIT)
        try:
            with ctx.one_shot() as cmd:
                if texture.layout != VK_IMAGE_LAYOUT_TRANSFER_SRC_OPTIMAL:
                    _transition(
                        cmd,
                        texture,
                        VK_IMAGE_LAYOUT_TRANSFER_SRC_OPTIMAL,
                        VK_ACCESS_SHADER_READ_BIT | VK_ACCESS_COLOR_ATTACHMENT_WRITE_BIT,
                        VK_ACCESS_TRANSFER_READ_BIT,
                        VK_PIPELINE_STAGE_ALL_COMMANDS_BIT,
                        VK_PIPELINE_STAGE_TRANSFER_BIT,
                    )
                vkCmdCopyImageToBuffer(
                    cmd,
                    texture.image,
                    VK_IMAGE_LAYOUT_TRANSFER_SRC_OPTIMAL,
                    buf,
                    1,
                    [_copy_region(texture.width, texture.height)],
                )
            raw = ctx.read_buffer(mem, nbytes)
        finally:
            if ctx.alive:
                ctx.free_buffer(buf, mem)

        arr = ctx.codec.decode_texels(raw, texture.width, texture.height)
        return to_rows(arr[:height, :width])

    def release_texture(self, texture: Optional[Texture]) -> None:
        if texture is None or texture.released:
            return
        self.ctx.free_image(texture.image, texture.memory, texture.view)
        texture.released = True
        self._live.pop(texture.id, None)

    # ------------------------------
    # Output target
    # ------------------------------
    def make_output_target(self, width: int, height: int) -> OutputTarget:
        """Bind a fresh width x height colour attachment to the shared render pass."""

        check_dims(width, height)
        ctx = self.ctx
        if not ctx.format_supported(ctx.codec.vk_format):
            raise FramebufferIncomplete(f"{ctx.codec.name} texels cannot be rendered to on {ctx.device_name}")
        limits = (
            min(ctx.max_framebuffer_width, ctx.max_image_dimension),
            min(ctx.max_framebuffer_height, ctx.max_image_dimension),
        )
        if width > limits[0] or height > limits[1]:
            raise FramebufferIncomplete(
                f"{width}x{height} output exceeds framebuffer limit {limits[0]}x{limits[1]}"
            )

        render_pass = self.render_pass
        tex = self._new_texture(
            width,
            height,
            VK_IMAGE_USAGE_COLOR_ATTACHMENT_BIT | VK_IMAGE_USAGE_TRANSFER_SRC_BIT,
        )
        fbci = VkFramebufferCreateInfo(
            sType=VK_STRUCTURE_TYPE_FRAMEBUFFER_CREATE_INFO,
            renderPass=render_pass,
            attachmentCount=1,
            pAttachments=[tex.view],
            width=width,
            height=height,
            layers=1,
        )
        try:
            framebuffer = vkCreateFramebuffer(ctx.device, fbci, None)
        except Exception as e:
            self.release_texture(tex)
            raise FramebufferIncomplete(f"could not attach {width}x{height} output: {e!r}") from e
        return OutputTarget(texture=tex, framebuffer=framebuffer, render_pass=render_pass)

    def detach_output(self, target: Optional[OutputTarget]) -> None:
        """Drop the per-call attachment; the render pass itself stays alive."""

        if target is None:
            return
        if target.framebuffer is not None:
            vkDestroyFramebuffer(self.ctx.device, target.framebuffer, None)
            target.framebuffer = None
        self.release_texture(target.texture)

    def destroy(self) -> None:
        for tex in list(self._live.values()):
            self.release_texture(tex)
        if self._render_pass is not None and self.ctx.device is not None:
            vkDestroyRenderPass(self.ctx.device, self._render_pass, None)
        self._render_pass = None


def color_range() -> "VkImageSubresourceRange":
    return VkImageSubresourceRange(
        aspectMask=VK_IMAGE_ASPECT_COLOR_BIT,
        baseMipLevel=0,
        levelCount=1,
        baseArrayLayer=0,
        layerCount=1,
    )


def _copy_region(width: int, height: int) -> "VkBufferImageCopy":
    return VkBufferImageCopy(
        bufferOffset=0,
        bufferRowLength=0,
        bufferImageHeight=0,
        imageSubresource=VkImageSubresourceLayers(
            aspectMask=VK_IMAGE_ASPECT_COLOR_BIT,
            mipLevel=0,
            baseArrayLayer=0,
            layerCount=1,
        ),
        imageOffset=VkOffset3D(x=0, y=0, z=0),
        imageExtent=VkExtent3D(width=width, height=height, depth=1),
    )


def _transition(
    cmd: Any,
    texture: Texture,
    new_layout: int,
    src_access: int,
    dst_access: int,
    src_stage: int,
    dst_stage: int,
) -> None:
    barrier = VkImageMemoryBarrier(
        sType=VK_STRUCTURE_TYPE_IMAGE_MEMORY_BARRIER,
        srcAccessMask=src_access,
        dstAccessMask=dst_access,
        oldLayout=texture.layout,
        newLayout=new_layout,
        srcQueueFamilyIndex=VK_QUEUE_FAMILY_IGNORED,
        dstQueueFamilyIndex=VK_QUEUE_FAMILY_IGNORED,
        image=texture.image,
        subresourceRange=color_range(),
    )
    vkCmdPipelineBarrier(cmd, src_stage, dst_stage, 0, 0, None, 0, None, 1, [barrier])
    texture.layout = new_layout
