# pyright: reportUndefinedVariable=false
# pyright: reportGeneralTypeIssues=false

from __future__ import annotations

"""Vulkan rendering context for shadermat.

One `GPUContext` owns the device, queue, the single reusable command buffer
and everything every kernel shares: the full-screen quad, the texture
sampler, the texture store (which owns the output render pass) and the cache
of compiled programs.

`get_context()` lazily creates the process-wide default context. If Vulkan is
unavailable (missing python bindings, no device, no glslc, unsupported texel
formats, or GPU use disabled by configuration) it returns None and the numeric
kernels run on the CPU instead.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Tuple, TYPE_CHECKING

import ctypes
import logging
import shutil
import threading

import numpy as np

from .codec import FLOAT, PACKED, ValueCodec
from .config import Settings, get_settings
from .errors import ConcurrentInvocation, ContextUnavailable, ShaderMatError, ShaderLinkError
from .shaders import QUAD_VERTICES, VERTEX_SHADER, compile_glsl
from .textures import TextureStore, color_range
from .uniforms import UniformLayout

try:
    # python package: "vulkan" (ctypes bindings)
    from vulkan import *  # type: ignore
    import vulkan as _vk  # type: ignore

    _HAS_VULKAN = True
except Exception:
    _HAS_VULKAN = False

# Help type checkers know the Vulkan symbols exist when installed.
if TYPE_CHECKING:  # pragma: no cover
    from vulkan import *  # type: ignore
    from .program import CompiledProgram


logger = logging.getLogger(__name__)

# vkWaitForFences treats the all-ones timeout as "no limit".
WAIT_FOREVER_NS = 2**64 - 1


def fence_timeout(settings: Settings) -> int:
    if settings.submit_timeout_ns is None:
        return WAIT_FOREVER_NS
    return settings.submit_timeout_ns


class GPUContext:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        if not _HAS_VULKAN:
            raise ContextUnavailable("Python package 'vulkan' not installed")

        self.settings = settings if settings is not None else get_settings()
        self.alive = False

        self.instance: Optional[VkInstance] = None
        self.physical_device: Optional[VkPhysicalDevice] = None
        self.device: Optional[VkDevice] = None
        self.queue: Optional[VkQueue] = None
        self.queue_family_index: Optional[int] = None

        self.command_pool: Optional[VkCommandPool] = None
        self.command_buffer: Optional[VkCommandBuffer] = None
        self._fence: Optional[VkFence] = None

        self.codec: ValueCodec = FLOAT
        self.device_name = "unknown"
        self.max_image_dimension = 0
        self.max_framebuffer_width = 0
        self.max_framebuffer_height = 0
        self.max_push_constants_size = 0
        self.clear_color = (0.0, 0.0, 0.0, 0.0)

        self.sampler: Optional[VkSampler] = None
        self.quad_buffer: Optional[VkBuffer] = None
        self._quad_memory: Optional[VkDeviceMemory] = None
        self.vertex_module: Optional[VkShaderModule] = None

        self.textures = TextureStore(self)
        self._programs: Dict[Tuple[str, UniformLayout], "CompiledProgram"] = {}
        self._lock = threading.Lock()

    # ------------------------------
    # Init
    # ------------------------------
    def init(self) -> None:
        if self.instance is not None:
            return

        if shutil.which(self.settings.glslc) is None:
            raise ContextUnavailable(f"{self.settings.glslc} not found; install shader compiler tools")

        app_info = VkApplicationInfo(
            sType=VK_STRUCTURE_TYPE_APPLICATION_INFO,
            pApplicationName=b"shadermat",
            applicationVersion=VK_MAKE_VERSION(0, 1, 0),
            pEngineName=b"shadermat",
            engineVersion=VK_MAKE_VERSION(0, 1, 0),
            apiVersion=VK_API_VERSION_1_0,
        )
        create_info = VkInstanceCreateInfo(
            sType=VK_STRUCTURE_TYPE_INSTANCE_CREATE_INFO,
            pApplicationInfo=app_info,
        )

        self.instance = vkCreateInstance(create_info, None)

        devices = vkEnumeratePhysicalDevices(self.instance)
        if not devices:
            raise ContextUnavailable("No Vulkan physical devices found")

        # Pick the first device with a graphics queue.
        for pd in devices:
            qprops = vkGetPhysicalDeviceQueueFamilyProperties(pd)
            for i, qp in enumerate(qprops):
                if qp.queueFlags & VK_QUEUE_GRAPHICS_BIT:
                    self.physical_device = pd
                    self.queue_family_index = int(i)
                    break
            if self.physical_device is not None:
                break

        if self.physical_device is None or self.queue_family_index is None:
            raise ContextUnavailable("No Vulkan graphics queue found")

        self._read_limits()
        self.codec = self._select_codec()

        queue_priorities = [1.0]
        qci = VkDeviceQueueCreateInfo(
            sType=VK_STRUCTURE_TYPE_DEVICE_QUEUE_CREATE_INFO,
            queueFamilyIndex=self.queue_family_index,
            queueCount=1,
            pQueuePriorities=queue_priorities,
        )
        dci = VkDeviceCreateInfo(
            sType=VK_STRUCTURE_TYPE_DEVICE_CREATE_INFO,
            queueCreateInfoCount=1,
            pQueueCreateInfos=[qci],
        )
        self.device = vkCreateDevice(self.physical_device, dci, None)
        self.queue = vkGetDeviceQueue(self.device, self.queue_family_index, 0)

        # Command pool + single reusable command buffer
        cpci = VkCommandPoolCreateInfo(
            sType=VK_STRUCTURE_TYPE_COMMAND_POOL_CREATE_INFO,
            queueFamilyIndex=self.queue_family_index,
            flags=VK_COMMAND_POOL_CREATE_RESET_COMMAND_BUFFER_BIT,
        )
        self.command_pool = vkCreateCommandPool(self.device, cpci, None)
        cbai = VkCommandBufferAllocateInfo(
            sType=VK_STRUCTURE_TYPE_COMMAND_BUFFER_ALLOCATE_INFO,
            commandPool=self.command_pool,
            level=VK_COMMAND_BUFFER_LEVEL_PRIMARY,
            commandBufferCount=1,
        )
        self.command_buffer = vkAllocateCommandBuffers(self.device, cbai)[0]

        fence_ci = VkFenceCreateInfo(sType=VK_STRUCTURE_TYPE_FENCE_CREATE_INFO)
        self._fence = vkCreateFence(self.device, fence_ci, None)

        self.sampler = self._create_sampler()
        self._create_quad()
        self.vertex_module = self.create_shader_module(
            compile_glsl(VERTEX_SHADER, "vert", self.settings.glslc)
        )
        self.alive = True
        logger.info("shadermat: using %s with %s encoding", self.device_name, self.codec.name)

    def _read_limits(self) -> None:
        props = vkGetPhysicalDeviceProperties(self.physical_device)
        name = props.deviceName
        try:
            self.device_name = _vk.ffi.string(name).decode("utf-8", errors="replace")
        except TypeError:
            self.device_name = str(name)
        limits = props.limits
        self.max_image_dimension = int(limits.maxImageDimension2D)
        self.max_framebuffer_width = int(limits.maxFramebufferWidth)
        self.max_framebuffer_height = int(limits.maxFramebufferHeight)
        self.max_push_constants_size = int(limits.maxPushConstantsSize)

    def format_supported(self, vk_format: int) -> bool:
        assert self.physical_device is not None
        props = vkGetPhysicalDeviceFormatProperties(self.physical_device, vk_format)
        required = VK_FORMAT_FEATURE_SAMPLED_IMAGE_BIT | VK_FORMAT_FEATURE_COLOR_ATTACHMENT_BIT
        return (int(props.optimalTilingFeatures) & required) == required

    def _select_codec(self) -> ValueCodec:
        choice = self.settings.encoding
        if choice == "float":
            candidates = [FLOAT]
        elif choice == "packed":
            candidates = [PACKED]
        else:
            candidates = [FLOAT, PACKED]

        for codec in candidates:
            if self.format_supported(codec.vk_format):
                return codec
            logger.info("shadermat: %s textures not renderable on %s", codec.name, self.device_name)
        raise ContextUnavailable(f"No supported texel format for encoding {choice!r}")

    def _create_sampler(self) -> VkSampler:
        assert self.device is not None
        sci = VkSamplerCreateInfo(
            sType=VK_STRUCTURE_TYPE_SAMPLER_CREATE_INFO,
            magFilter=VK_FILTER_NEAREST,
            minFilter=VK_FILTER_NEAREST,
            mipmapMode=VK_SAMPLER_MIPMAP_MODE_NEAREST,
            addressModeU=VK_SAMPLER_ADDRESS_MODE_CLAMP_TO_EDGE,
            addressModeV=VK_SAMPLER_ADDRESS_MODE_CLAMP_TO_EDGE,
            addressModeW=VK_SAMPLER_ADDRESS_MODE_CLAMP_TO_EDGE,
            mipLodBias=0.0,
            anisotropyEnable=VK_FALSE,
            maxAnisotropy=1.0,
            compareEnable=VK_FALSE,
            compareOp=VK_COMPARE_OP_ALWAYS,
            minLod=0.0,
            maxLod=0.0,
            borderColor=VK_BORDER_COLOR_FLOAT_TRANSPARENT_BLACK,
            unnormalizedCoordinates=VK_FALSE,
        )
        return vkCreateSampler(self.device, sci, None)

    def _create_quad(self) -> None:
        data = QUAD_VERTICES.tobytes()
        self.quad_buffer, self._quad_memory = self.alloc_buffer(
            len(data), VK_BUFFER_USAGE_VERTEX_BUFFER_BIT
        )
        self.write_buffer(self._quad_memory, data)

    def create_shader_module(self, spv: bytes) -> VkShaderModule:
        # Vulkan expects uint32 words.
        if len(spv) % 4 != 0:
            raise ValueError("SPIR-V bytecode length must be multiple of 4")

        code_u32 = (ctypes.c_uint32 * (len(spv) // 4)).from_buffer_copy(spv)
        smci = VkShaderModuleCreateInfo(
            sType=VK_STRUCTURE_TYPE_SHADER_MODULE_CREATE_INFO,
            codeSize=len(spv),
            pCode=code_u32,
        )
        assert self.device is not None
        return vkCreateShaderModule(self.device, smci, None)

    # ------------------------------
    # Programs
    # ------------------------------
    def compile_program(self, source: str, layout: UniformLayout) -> "CompiledProgram":
        """Compile a fragment source once per (source, layout) and cache it."""

        from .program import build_program

        key = (source, layout)
        cached = self._programs.get(key)
        if cached is not None:
            return cached

        if layout.size > self.max_push_constants_size:
            raise ShaderLinkError(
                f"Uniform block of {layout.size} bytes exceeds device limit "
                f"of {self.max_push_constants_size}"
            )

        spv = compile_glsl(source, "frag", self.settings.glslc)
        program = build_program(self, spv, layout, source)
        self._programs[key] = program
        return program

    # ------------------------------
    # Buffers / images
    # ------------------------------
    def _find_memory_type(self, type_bits: int, props: int) -> int:
        assert self.physical_device is not None
        mem_props = vkGetPhysicalDeviceMemoryProperties(self.physical_device)
        for i in range(mem_props.memoryTypeCount):
            if (type_bits & (1 << i)) and (mem_props.memoryTypes[i].propertyFlags & props) == props:
                return i
        raise ShaderMatError("Failed to find suitable Vulkan memory type")

    def alloc_buffer(self, nbytes: int, usage: int) -> Tuple[VkBuffer, VkDeviceMemory]:
        assert self.device is not None

        bci = VkBufferCreateInfo(
            sType=VK_STRUCTURE_TYPE_BUFFER_CREATE_INFO,
            size=nbytes,
            usage=usage,
            sharingMode=VK_SHARING_MODE_EXCLUSIVE,
        )
        buf = vkCreateBuffer(self.device, bci, None)
        req = vkGetBufferMemoryRequirements(self.device, buf)

        mem_type = self._find_memory_type(
            req.memoryTypeBits,
            VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT | VK_MEMORY_PROPERTY_HOST_COHERENT_BIT,
        )
        mai = VkMemoryAllocateInfo(
            sType=VK_STRUCTURE_TYPE_MEMORY_ALLOCATE_INFO,
            allocationSize=req.size,
            memoryTypeIndex=mem_type,
        )
        mem = vkAllocateMemory(self.device, mai, None)
        vkBindBufferMemory(self.device, buf, mem, 0)
        return buf, mem

    def free_buffer(self, buf: VkBuffer, mem: VkDeviceMemory) -> None:
        assert self.device is not None
        vkDestroyBuffer(self.device, buf, None)
        vkFreeMemory(self.device, mem, None)

    def alloc_image(self, width: int, height: int, usage: int) -> Tuple[VkImage, VkDeviceMemory, VkImageView]:
        assert self.device is not None

        ici = VkImageCreateInfo(
            sType=VK_STRUCTURE_TYPE_IMAGE_CREATE_INFO,
            imageType=VK_IMAGE_TYPE_2D,
            format=self.codec.vk_format,
            extent=VkExtent3D(width=width, height=height, depth=1),
            mipLevels=1,
            arrayLayers=1,
            samples=VK_SAMPLE_COUNT_1_BIT,
            tiling=VK_IMAGE_TILING_OPTIMAL,
            usage=usage,
            sharingMode=VK_SHARING_MODE_EXCLUSIVE,
            initialLayout=VK_IMAGE_LAYOUT_UNDEFINED,
        )
        image = vkCreateImage(self.device, ici, None)
        req = vkGetImageMemoryRequirements(self.device, image)
        try:
            mem_type = self._find_memory_type(req.memoryTypeBits, VK_MEMORY_PROPERTY_DEVICE_LOCAL_BIT)
        except ShaderMatError:
            mem_type = self._find_memory_type(req.memoryTypeBits, 0)
        mai = VkMemoryAllocateInfo(
            sType=VK_STRUCTURE_TYPE_MEMORY_ALLOCATE_INFO,
            allocationSize=req.size,
            memoryTypeIndex=mem_type,
        )
        mem = vkAllocateMemory(self.device, mai, None)
        vkBindImageMemory(self.device, image, mem, 0)

        ivci = VkImageViewCreateInfo(
            sType=VK_STRUCTURE_TYPE_IMAGE_VIEW_CREATE_INFO,
            image=image,
            viewType=VK_IMAGE_VIEW_TYPE_2D,
            format=self.codec.vk_format,
            components=VkComponentMapping(
                r=VK_COMPONENT_SWIZZLE_IDENTITY,
                g=VK_COMPONENT_SWIZZLE_IDENTITY,
                b=VK_COMPONENT_SWIZZLE_IDENTITY,
                a=VK_COMPONENT_SWIZZLE_IDENTITY,
            ),
            subresourceRange=color_range(),
        )
        view = vkCreateImageView(self.device, ivci, None)
        return image, mem, view

    def free_image(self, image: VkImage, mem: VkDeviceMemory, view: VkImageView) -> None:
        assert self.device is not None
        vkDestroyImageView(self.device, view, None)
        vkDestroyImage(self.device, image, None)
        vkFreeMemory(self.device, mem, None)

    def write_buffer(self, mem: VkDeviceMemory, data: bytes) -> None:
        assert self.device is not None
        nbytes = len(data)
        mapped = vkMapMemory(self.device, mem, 0, nbytes, 0)
        try:
            addr = _mapped_address(mapped)
            if addr is not None:
                ctypes.memmove(addr, data, nbytes)
            else:
                mv = memoryview(_mapped_object(mapped)).cast("B")
                if mv.readonly:
                    raise ShaderMatError("vkMapMemory returned a read-only mapping")
                mv[:nbytes] = data
        finally:
            vkUnmapMemory(self.device, mem)

    def read_buffer(self, mem: VkDeviceMemory, nbytes: int) -> bytes:
        assert self.device is not None
        mapped = vkMapMemory(self.device, mem, 0, nbytes, 0)
        try:
            addr = _mapped_address(mapped)
            if addr is not None:
                return ctypes.string_at(addr, nbytes)
            return bytes(memoryview(_mapped_object(mapped)).cast("B")[:nbytes])
        finally:
            vkUnmapMemory(self.device, mem)

    # ------------------------------
    # Submission
    # ------------------------------
    @contextmanager
    def one_shot(self) -> Iterator[VkCommandBuffer]:
        """Record into the shared command buffer, then submit and wait."""

        assert self.command_buffer is not None
        vkResetCommandBuffer(self.command_buffer, 0)
        begin = VkCommandBufferBeginInfo(
            sType=VK_STRUCTURE_TYPE_COMMAND_BUFFER_BEGIN_INFO,
            flags=VK_COMMAND_BUFFER_USAGE_ONE_TIME_SUBMIT_BIT,
        )
        vkBeginCommandBuffer(self.command_buffer, begin)
        try:
            yield self.command_buffer
        finally:
            vkEndCommandBuffer(self.command_buffer)
        self._submit_and_wait()

    def _submit_and_wait(self) -> None:
        assert self.device is not None
        assert self.queue is not None
        assert self.command_buffer is not None

        if self._fence is None:
            fence_ci = VkFenceCreateInfo(sType=VK_STRUCTURE_TYPE_FENCE_CREATE_INFO)
            self._fence = vkCreateFence(self.device, fence_ci, None)

        submit = VkSubmitInfo(
            sType=VK_STRUCTURE_TYPE_SUBMIT_INFO,
            commandBufferCount=1,
            pCommandBuffers=[self.command_buffer],
        )
        vkResetFences(self.device, 1, [self._fence])
        vkQueueSubmit(self.queue, 1, [submit], self._fence)
        try:
            vkWaitForFences(self.device, 1, [self._fence], VK_TRUE, fence_timeout(self.settings))
        except Exception as e:
            # The submitted work may still be running; its images must not be freed.
            self.alive = False
            logger.error("shadermat: GPU work did not complete, context abandoned: %r", e)
            raise ShaderMatError(f"GPU work did not complete: {e!r}") from e

    @contextmanager
    def exclusive(self) -> Iterator["GPUContext"]:
        """Hold the context for one dispatch; overlapping use fails fast."""

        if not self._lock.acquire(blocking=False):
            raise ConcurrentInvocation("GPU context is already running a kernel")
        try:
            yield self
        finally:
            self._lock.release()

    # ------------------------------
    # Teardown
    # ------------------------------
    def destroy(self) -> None:
        if self.device is not None:
            vkDeviceWaitIdle(self.device)
            for program in self._programs.values():
                program.destroy(self)
            self._programs.clear()
            self.textures.destroy()
            if self.vertex_module is not None:
                vkDestroyShaderModule(self.device, self.vertex_module, None)
            if self.quad_buffer is not None:
                self.free_buffer(self.quad_buffer, self._quad_memory)
            if self.sampler is not None:
                vkDestroySampler(self.device, self.sampler, None)
            if self._fence is not None:
                vkDestroyFence(self.device, self._fence, None)
            if self.command_pool is not None:
                vkDestroyCommandPool(self.device, self.command_pool, None)
            vkDestroyDevice(self.device, None)
        if self.instance is not None:
            vkDestroyInstance(self.instance, None)
        self.vertex_module = None
        self.quad_buffer = self._quad_memory = None
        self.sampler = None
        self._fence = None
        self.command_pool = self.command_buffer = None
        self.device = self.queue = None
        self.instance = None
        self.alive = False


def _mapped_object(mapped: Any) -> Any:
    if isinstance(mapped, (tuple, list)):
        mapped = mapped[1]
    # Some bindings return a pointer wrapper; normalize to its underlying value early.
    if hasattr(mapped, "value"):
        mapped = mapped.value
    return mapped


def _mapped_address(mapped: Any) -> Optional[int]:
    obj = _mapped_object(mapped)
    if isinstance(obj, (int, np.integer)):
        return int(obj)
    return None


_CTX: Optional[GPUContext] = None
_CTX_CHECKED = False
_VULKAN_DISABLED_REASON: Optional[str] = None


def _disable_vulkan(reason: str) -> None:
    global _VULKAN_DISABLED_REASON, _CTX
    _VULKAN_DISABLED_REASON = reason
    _CTX = None
    logger.warning("shadermat: GPU unavailable, using CPU fallback (%s)", reason)


def get_context() -> Optional[GPUContext]:
    """Return the default context, creating it on first use; None if unavailable."""

    global _CTX, _CTX_CHECKED
    if _CTX is not None:
        return _CTX
    if _CTX_CHECKED:
        return None
    _CTX_CHECKED = True

    if get_settings().disable_gpu:
        _disable_vulkan("disabled by SHADERMAT_DISABLE_GPU")
        return None
    if not _HAS_VULKAN:
        _disable_vulkan("Python package 'vulkan' not installed")
        return None

    ctx = None
    try:
        ctx = GPUContext()
        ctx.init()
    except Exception as e:
        if ctx is not None:
            try:
                ctx.destroy()
            except Exception:
                logger.debug("shadermat: partial context teardown failed", exc_info=True)
        _disable_vulkan(str(e) or type(e).__name__)
        return None
    _CTX = ctx
    return _CTX


def require_context() -> GPUContext:
    ctx = get_context()
    if ctx is None:
        raise ContextUnavailable(_VULKAN_DISABLED_REASON or "Vulkan backend disabled")
    return ctx


def set_context(ctx: Optional[Any]) -> None:
    """Install a caller-supplied context (or None to force the CPU path)."""

    global _CTX, _CTX_CHECKED, _VULKAN_DISABLED_REASON
    _CTX = ctx
    _CTX_CHECKED = True
    _VULKAN_DISABLED_REASON = None if ctx is not None else "context cleared by caller"


def reset_context() -> None:
    """Destroy the default context and forget whether it was available."""

    global _CTX, _CTX_CHECKED, _VULKAN_DISABLED_REASON
    ctx = _CTX
    _CTX = None
    _CTX_CHECKED = False
    _VULKAN_DISABLED_REASON = None
    if isinstance(ctx, GPUContext):
        ctx.destroy()


def gpu_available() -> bool:
    return get_context() is not None
